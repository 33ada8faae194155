"""
JWT authentication helpers and middleware for the Flask API.
"""

import uuid
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import current_app, jsonify, request

from careportal.config import SECRET_KEY, TOKEN_EXPIRY_HOURS
from careportal.models import AccessContext


class SessionStore:
    """In-memory session store owned by the app (use Redis in production).

    Structure: {token: {"ctx": AccessContext, "panels": {...}, "created_at": datetime, ...}}
    """

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}

    def __len__(self):
        return len(self.sessions)

    def __contains__(self, token):
        return token in self.sessions

    def open(self, token: str, ctx: AccessContext) -> Dict[str, Any]:
        now = datetime.utcnow()
        self.sessions[token] = {
            "ctx": ctx,
            "panels": {},
            "created_at": now,
            "last_activity": now,
        }
        return self.sessions[token]

    def get(self, token: str) -> Optional[Dict[str, Any]]:
        return self.sessions.get(token)

    def close(self, token: str) -> None:
        self.sessions.pop(token, None)

    def update_context(self, user_id: str, ctx: AccessContext) -> None:
        for data in self.sessions.values():
            if data["ctx"].user_id == user_id:
                data["ctx"] = ctx

    def invalidate_panels(self, *names: str) -> None:
        """Mark the named panels stale in every open session."""
        for data in self.sessions.values():
            for name in names:
                panel = data["panels"].get(name)
                if panel is not None:
                    panel.invalidate()

    def cleanup_expired(self) -> int:
        """Remove sessions that have been inactive beyond TOKEN_EXPIRY_HOURS."""
        now = datetime.utcnow()
        expired = [
            tok for tok, data in self.sessions.items()
            if (now - data["last_activity"]).total_seconds() > TOKEN_EXPIRY_HOURS * 3600
        ]
        for tok in expired:
            del self.sessions[tok]
        if expired:
            print(f"[cleanup] Removed {len(expired)} expired sessions")
        return len(expired)


def generate_token(ctx: AccessContext) -> str:
    """Generate a JWT token for an authenticated user."""
    now = datetime.utcnow()
    payload = {
        "sub": ctx.user_id,
        "role": ctx.role.value,
        "display_name": ctx.display_name,
        "iat": now,
        "exp": now + timedelta(hours=TOKEN_EXPIRY_HOURS),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify a JWT token and return the decoded payload (or None)."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def token_required(f):
    """Decorator that protects endpoints with JWT authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None

        # Check Authorization header (Bearer token)
        if "Authorization" in request.headers:
            auth_header = request.headers["Authorization"]
            try:
                token = auth_header.split(" ")[1]
            except IndexError:
                return jsonify({"error": "Invalid authorization header format"}), 401

        # Fallback: token in query params
        if not token:
            token = request.args.get("token")

        if not token:
            return jsonify({"error": "Authentication token is missing"}), 401

        payload = verify_token(token)
        if not payload:
            return jsonify({"error": "Invalid or expired token"}), 401

        store: SessionStore = current_app.config["SESSION_STORE"]
        session_data = store.get(token)
        if session_data is None:
            return jsonify({"error": "Session not found. Please login again."}), 401

        session_data["last_activity"] = datetime.utcnow()
        request.session_data = session_data
        request.token = token

        return f(*args, **kwargs)

    return decorated
