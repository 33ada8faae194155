"""
Database engine initialisation, table definitions and row helpers.
"""

import sys
import traceback
import uuid
from datetime import date, datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, MetaData, String,
    Table, Text, create_engine, inspect, text,
)
from sqlalchemy.exc import SQLAlchemyError

from careportal.config import get_env
from careportal.errors import BackendError

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────────

auth_identities = Table(
    "auth_identities", metadata,
    Column("uid", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("display_name", String(255), nullable=False, default=""),
    Column("created_at", DateTime, default=datetime.utcnow),
)

users = Table(
    "users", metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("display_name", String(255), nullable=False, default=""),
    Column("role", String(20), nullable=False, default="patient"),
    Column("created_at", DateTime, default=datetime.utcnow),
)

appointments = Table(
    "appointments", metadata,
    Column("id", String(36), primary_key=True),
    Column("patient_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("doctor_id", String(36), ForeignKey("users.id"), nullable=True),
    Column("title", String(255), nullable=False, default=""),
    Column("department", String(100), nullable=False, default=""),
    Column("date", String(10), nullable=False),
    Column("time", String(5), nullable=False, default=""),
    Column("status", String(20), nullable=False, default="scheduled"),
    Column("notes", Text, nullable=False, default=""),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

health_records = Table(
    "health_records", metadata,
    Column("id", String(36), primary_key=True),
    Column("patient_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("doctor_id", String(36), ForeignKey("users.id"), nullable=True),
    Column("title", String(255), nullable=False),
    Column("record_type", String(100), nullable=False),
    Column("date", String(10), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("file_url", String(1024), nullable=True),
    Column("hospital", String(255), nullable=True),
    Column("status", String(20), nullable=False, default="active"),
    Column("created_at", DateTime, default=datetime.utcnow),
)

access_requests = Table(
    "access_requests", metadata,
    Column("id", String(36), primary_key=True),
    Column("requester_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("patient_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("record_id", String(36), ForeignKey("health_records.id"), nullable=True),
    Column("status", String(20), nullable=False, default="pending"),
    Column("request_reason", Text, nullable=False),
    Column("response_reason", Text, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

conversations = Table(
    "conversations", metadata,
    Column("id", String(36), primary_key=True),
    Column("created_at", DateTime, default=datetime.utcnow),
)

conversation_participants = Table(
    "conversation_participants", metadata,
    Column("conversation_id", String(36), ForeignKey("conversations.id"), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), primary_key=True),
)

messages = Table(
    "messages", metadata,
    Column("id", String(36), primary_key=True),
    Column("conversation_id", String(36), ForeignKey("conversations.id"), nullable=False),
    Column("sender_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("content", Text, nullable=False),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, default=datetime.utcnow),
)

community_posts = Table(
    "community_posts", metadata,
    Column("id", String(36), primary_key=True),
    Column("author_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("title", String(255), nullable=False),
    Column("content", Text, nullable=False),
    Column("category", String(100), nullable=False),
    Column("tags", JSON, nullable=False, default=list),
    Column("upvotes", Integer, nullable=False, default=0),
    Column("downvotes", Integer, nullable=False, default=0),
    Column("status", String(20), nullable=False, default="active"),
    Column("created_at", DateTime, default=datetime.utcnow),
)

community_comments = Table(
    "community_comments", metadata,
    Column("id", String(36), primary_key=True),
    Column("post_id", String(36), ForeignKey("community_posts.id"), nullable=False),
    Column("author_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("content", Text, nullable=False),
    Column("upvotes", Integer, nullable=False, default=0),
    Column("downvotes", Integer, nullable=False, default=0),
    Column("status", String(20), nullable=False, default="active"),
    Column("created_at", DateTime, default=datetime.utcnow),
)


# ── Engine ───────────────────────────────────────────────────────────

def init_engine():
    """Create a SQLAlchemy engine and verify the connection."""
    db_uri = get_env("DB_URI")
    engine = create_engine(db_uri, echo=False, future=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    print("[init] Connected to DB.")
    return engine


def create_schema(engine) -> None:
    """Create any portal tables that do not exist yet."""
    metadata.create_all(engine)


def missing_tables(engine) -> List[str]:
    """Return the portal tables absent from the connected database."""
    present = set(inspect(engine).get_table_names())
    return sorted(name for name in metadata.tables if name not in present)


# ── Row helpers ──────────────────────────────────────────────────────

def new_id() -> str:
    return str(uuid.uuid4())


def row_to_dict(row) -> Dict[str, Any]:
    """Convert a result row mapping to a JSON-friendly dict."""
    out = {}
    for key, value in dict(row).items():
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        out[key] = value
    return out


def fetch_all(engine, stmt, what: str) -> List[Dict[str, Any]]:
    """Run a read query and return its rows as dicts."""
    try:
        with engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
    except SQLAlchemyError as e:
        print(f"[ERROR] Error fetching {what}: {e}", file=sys.stderr)
        raise BackendError(f"Could not load {what}.") from e
    return [row_to_dict(r) for r in rows]


def fetch_one(engine, stmt, what: str):
    """Run a read query and return the first row as a dict, or None."""
    try:
        with engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
    except SQLAlchemyError as e:
        print(f"[ERROR] Error fetching {what}: {e}", file=sys.stderr)
        raise BackendError(f"Could not load {what}.") from e
    return row_to_dict(row) if row is not None else None


def execute_write(engine, statements, what: str) -> int:
    """Run one or more write statements in one transaction; returns the rows affected."""
    if not isinstance(statements, (list, tuple)):
        statements = [statements]
    affected = 0
    try:
        with engine.begin() as conn:
            for stmt in statements:
                affected += max(conn.execute(stmt).rowcount, 0)
    except SQLAlchemyError as e:
        print(f"[ERROR] Error {what}: {e}", file=sys.stderr)
        traceback.print_exc()
        raise BackendError(f"Backend error while {what}.") from e
    return affected
