"""
Auth provider boundary: sign-up, sign-in and profile updates.

Identities live in their own table; the identity bridge maps them onto
role-tagged rows in ``users``.
"""

import re
import sys

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from careportal.config import MIN_PASSWORD_LENGTH
from careportal.database import auth_identities, execute_write, fetch_one, new_id
from careportal.errors import BackendError, NotAuthenticatedError, ValidationError
from careportal.models import Identity

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _to_identity(row: dict) -> Identity:
    return Identity(uid=row["uid"], email=row["email"], display_name=row["display_name"] or "")


def sign_up(engine, email: str, password: str, display_name: str) -> Identity:
    """Create a new identity. Raises ValidationError on bad input or a taken email."""
    email = (email or "").strip().lower()
    display_name = (display_name or "").strip()

    if not EMAIL_RE.match(email):
        raise ValidationError("A valid email address is required.")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if not display_name:
        raise ValidationError("Name is required.")

    taken = "An account with this email already exists."
    existing = fetch_one(engine, select(auth_identities).where(auth_identities.c.email == email), "identity")
    if existing:
        raise ValidationError(taken)

    uid = new_id()
    try:
        with engine.begin() as conn:
            conn.execute(insert(auth_identities).values(
                uid=uid,
                email=email,
                password_hash=generate_password_hash(password),
                display_name=display_name,
            ))
    except IntegrityError as e:
        # a concurrent sign-up took the email after the check above
        raise ValidationError(taken) from e
    except SQLAlchemyError as e:
        print(f"[ERROR] Error creating identity: {e}", file=sys.stderr)
        raise BackendError("Backend error while creating identity.") from e
    return Identity(uid=uid, email=email, display_name=display_name)


def sign_in(engine, email: str, password: str) -> Identity:
    """Verify credentials and return the identity."""
    email = (email or "").strip().lower()
    row = fetch_one(engine, select(auth_identities).where(auth_identities.c.email == email), "identity")
    if not row or not check_password_hash(row["password_hash"], password or ""):
        raise NotAuthenticatedError("Invalid email or password.")
    return _to_identity(row)


def get_identity(engine, uid: str):
    row = fetch_one(engine, select(auth_identities).where(auth_identities.c.uid == uid), "identity")
    return _to_identity(row) if row else None


def update_profile(engine, uid: str, display_name: str) -> Identity:
    """Change the display name of an identity."""
    display_name = (display_name or "").strip()
    if not display_name:
        raise ValidationError("Name is required.")
    if get_identity(engine, uid) is None:
        raise NotAuthenticatedError("Not authenticated")
    execute_write(
        engine,
        update(auth_identities).where(auth_identities.c.uid == uid).values(display_name=display_name),
        "updating profile",
    )
    return get_identity(engine, uid)
