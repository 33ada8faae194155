"""
Read side of the data-access layer: runs the role-scoped queries and shapes
the rows the dashboards consume.
"""

from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func, select, update

from careportal.config import ALL_TOPICS, MAX_RESULTS_RETURN
from careportal.database import (
    community_comments, community_posts, conversation_participants, conversations,
    execute_write, fetch_all, fetch_one, health_records, messages, users,
)
from careportal.errors import AccessDeniedError, NotFoundError, ValidationError
from careportal.models import AccessContext, Role
from careportal.rbac import (
    approved_grants, build_policy, can_read_record, require_context, scope_access_requests,
    scope_appointments, scope_health_records,
)

RESTRICTED_RECORD_FIELDS = ("description", "file_url")


# ── Helpers ──────────────────────────────────────────────────────────

def _user_names(engine, ids: Iterable[Optional[str]]) -> Dict[str, str]:
    wanted = sorted({i for i in ids if i})
    if not wanted:
        return {}
    rows = fetch_all(engine, select(users.c.id, users.c.display_name).where(users.c.id.in_(wanted)), "users")
    return {r["id"]: r["display_name"] for r in rows}


def _attach_names(engine, rows: List[dict], columns: Dict[str, str]) -> List[dict]:
    """Add display-name fields for the user-id columns in *columns* (id col -> name col)."""
    names = _user_names(engine, (row.get(col) for row in rows for col in columns))
    for row in rows:
        for id_col, name_col in columns.items():
            row[name_col] = names.get(row.get(id_col))
    return rows


# ── Users ────────────────────────────────────────────────────────────

def get_users(engine, role: Optional[str] = None) -> List[dict]:
    """The user directory, optionally restricted to one role."""
    stmt = select(users.c.id, users.c.email, users.c.display_name, users.c.role)
    if role:
        try:
            role = Role.parse(role)
        except ValueError as e:
            raise ValidationError(str(e))
        stmt = stmt.where(users.c.role == role.value)
    return fetch_all(engine, stmt.order_by(users.c.display_name), "users")


def get_current_user(engine, ctx: AccessContext) -> dict:
    ctx = require_context(ctx)
    row = fetch_one(engine, select(users).where(users.c.id == ctx.user_id), "current user")
    if row is None:
        raise NotFoundError("User profile not found.")
    return row


# ── Appointments ─────────────────────────────────────────────────────

def get_appointments(engine, ctx: AccessContext, status: Optional[str] = None,
                     patient_id: Optional[str] = None) -> List[dict]:
    stmt = scope_appointments(ctx, status=status, patient_id=patient_id).limit(MAX_RESULTS_RETURN)
    rows = fetch_all(engine, stmt, "appointments")
    return _attach_names(engine, rows, {"patient_id": "patient_name", "doctor_id": "doctor_name"})


# ── Health records ───────────────────────────────────────────────────

def _grants_for(engine, ctx: AccessContext, rows: List[dict]):
    if ctx.role != Role.HEALTHCARE or not rows:
        return []
    stmt = approved_grants(ctx, patient_ids={r["patient_id"] for r in rows})
    return [(g["patient_id"], g["record_id"]) for g in fetch_all(engine, stmt, "access grants")]


def _apply_read_gate(ctx: AccessContext, rows: List[dict], grants) -> List[dict]:
    for row in rows:
        allowed = can_read_record(ctx, row, grants)
        row["access_granted"] = allowed
        if not allowed:
            for field in RESTRICTED_RECORD_FIELDS:
                row[field] = None
    return rows


def get_health_records(engine, ctx: AccessContext, patient_id: Optional[str] = None) -> List[dict]:
    """Records the caller may browse; content is redacted where access is not granted."""
    stmt = scope_health_records(ctx, patient_id=patient_id).limit(MAX_RESULTS_RETURN)
    rows = fetch_all(engine, stmt, "health records")
    rows = _apply_read_gate(ctx, rows, _grants_for(engine, ctx, rows))
    return _attach_names(engine, rows, {"patient_id": "patient_name", "doctor_id": "doctor_name"})


def get_health_record(engine, ctx: AccessContext, record_id: str) -> dict:
    """A single record with content. Raises AccessDeniedError when content is gated."""
    stmt = scope_health_records(ctx).where(health_records.c.id == record_id)
    row = fetch_one(engine, stmt, "health record")
    if row is None:
        raise NotFoundError("Health record not found.")
    if not can_read_record(ctx, row, _grants_for(engine, ctx, [row])):
        raise AccessDeniedError("An approved access request is required to view this record.")
    row["access_granted"] = True
    return _attach_names(engine, [row], {"patient_id": "patient_name", "doctor_id": "doctor_name"})[0]


# ── Access requests ──────────────────────────────────────────────────

def get_access_requests(engine, ctx: AccessContext, status: Optional[str] = None) -> List[dict]:
    rows = fetch_all(engine, scope_access_requests(ctx, status=status), "access requests")
    record_ids = sorted({r["record_id"] for r in rows if r["record_id"]})
    titles = {}
    if record_ids:
        recs = fetch_all(
            engine,
            select(health_records.c.id, health_records.c.title).where(health_records.c.id.in_(record_ids)),
            "health records",
        )
        titles = {r["id"]: r["title"] for r in recs}
    for row in rows:
        row["record_title"] = titles.get(row["record_id"]) if row["record_id"] else "All records"
    return _attach_names(engine, rows, {"requester_id": "requester_name", "patient_id": "patient_name"})


# ── Messaging ────────────────────────────────────────────────────────

def conversation_ids_for(engine, user_id: str) -> List[str]:
    rows = fetch_all(
        engine,
        select(conversation_participants.c.conversation_id).where(conversation_participants.c.user_id == user_id),
        "conversations",
    )
    return [r["conversation_id"] for r in rows]


def require_participant(engine, ctx: AccessContext, conversation_id: str) -> None:
    ctx = require_context(ctx)
    row = fetch_one(
        engine,
        select(conversation_participants).where(and_(
            conversation_participants.c.conversation_id == conversation_id,
            conversation_participants.c.user_id == ctx.user_id,
        )),
        "conversation participant",
    )
    if row is None:
        raise NotFoundError("Conversation not found.")


def get_conversations(engine, ctx: AccessContext) -> List[dict]:
    """The caller's conversations with the other participant, last message and unread count."""
    ctx = require_context(ctx)
    ids = conversation_ids_for(engine, ctx.user_id)
    if not ids:
        return []

    participants = fetch_all(
        engine,
        select(conversation_participants.c.conversation_id, users.c.id, users.c.display_name, users.c.role)
        .join(users, users.c.id == conversation_participants.c.user_id)
        .where(conversation_participants.c.conversation_id.in_(ids))
        .where(conversation_participants.c.user_id != ctx.user_id),
        "conversation participants",
    )
    others = {}
    for p in participants:
        others.setdefault(p["conversation_id"], p)

    unread_rows = fetch_all(
        engine,
        select(messages.c.conversation_id, func.count(messages.c.id).label("n"))
        .where(messages.c.conversation_id.in_(ids))
        .where(messages.c.is_read.is_(False))
        .where(messages.c.sender_id != ctx.user_id)
        .group_by(messages.c.conversation_id),
        "unread counts",
    )
    unread = {r["conversation_id"]: r["n"] for r in unread_rows}

    out = []
    for conv in fetch_all(engine, select(conversations).where(conversations.c.id.in_(ids)), "conversations"):
        last = fetch_one(
            engine,
            select(messages.c.content, messages.c.created_at)
            .where(messages.c.conversation_id == conv["id"])
            .order_by(messages.c.created_at.desc())
            .limit(1),
            "last message",
        )
        other = others.get(conv["id"]) or {}
        out.append({
            "id": conv["id"],
            "participant_id": other.get("id"),
            "participant_name": other.get("display_name"),
            "participant_role": other.get("role"),
            "last_message": last["content"] if last else None,
            "last_message_time": last["created_at"] if last else None,
            "unread_count": unread.get(conv["id"], 0),
            "created_at": conv["created_at"],
        })
    out.sort(key=lambda c: c["last_message_time"] or c["created_at"] or "", reverse=True)
    return out


def get_messages(engine, ctx: AccessContext, conversation_id: str) -> List[dict]:
    """Messages in a conversation, oldest first; marks the other side's messages read."""
    require_participant(engine, ctx, conversation_id)
    rows = fetch_all(
        engine,
        select(messages, users.c.display_name.label("sender_name"))
        .join(users, users.c.id == messages.c.sender_id)
        .where(messages.c.conversation_id == conversation_id)
        .order_by(messages.c.created_at.asc()),
        "messages",
    )
    execute_write(
        engine,
        update(messages)
        .where(messages.c.conversation_id == conversation_id)
        .where(messages.c.sender_id != ctx.user_id)
        .values(is_read=True),
        "marking messages read",
    )
    return rows


# ── Community ────────────────────────────────────────────────────────

def get_community_posts(engine, category: Optional[str] = None) -> List[dict]:
    """Active posts, newest first, with author name and comment count."""
    comment_counts = (
        select(community_comments.c.post_id, func.count(community_comments.c.id).label("comment_count"))
        .where(community_comments.c.status == "active")
        .group_by(community_comments.c.post_id)
        .subquery()
    )
    stmt = (
        select(community_posts, func.coalesce(comment_counts.c.comment_count, 0).label("comment_count"))
        .outerjoin(comment_counts, comment_counts.c.post_id == community_posts.c.id)
        .where(community_posts.c.status == "active")
    )
    if category and category != ALL_TOPICS:
        stmt = stmt.where(community_posts.c.category == category)
    rows = fetch_all(engine, stmt.order_by(community_posts.c.created_at.desc()), "community posts")
    return _attach_names(engine, rows, {"author_id": "author_name"})


def get_community_post(engine, post_id: str, include_removed: bool = False):
    stmt = select(community_posts).where(community_posts.c.id == post_id)
    if not include_removed:
        stmt = stmt.where(community_posts.c.status == "active")
    row = fetch_one(engine, stmt, "community post")
    if row is None:
        raise NotFoundError("Post not found.")
    return row


def get_post_comments(engine, post_id: str) -> List[dict]:
    rows = fetch_all(
        engine,
        select(community_comments)
        .where(community_comments.c.post_id == post_id)
        .where(community_comments.c.status == "active")
        .order_by(community_comments.c.created_at.asc()),
        "post comments",
    )
    return _attach_names(engine, rows, {"author_id": "author_name"})


def describe_scope(ctx: AccessContext) -> dict:
    """Summary of the caller's policy for the profile endpoint."""
    policy = build_policy(ctx)
    return {"role": policy.role.value, "label": policy.role.label, "notes": policy.notes}
