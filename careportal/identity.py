"""
Identity bridge – maps auth-provider identities onto role-tagged user rows.
"""

import json
import os
import sys
from typing import Dict, Optional

from sqlalchemy import insert, select, update

from careportal.config import DEFAULT_ROLE
from careportal.database import execute_write, fetch_one, users
from careportal.models import AccessContext, Identity, Role


class RoleCache:
    """Per-identity role values kept on the client side, keyed by uid.

    Backed by a JSON file when *path* is given, otherwise in memory only.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._roles: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"[WARN] Could not read role cache ({e}). Starting empty.", file=sys.stderr)
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self) -> None:
        if not self.path:
            return
        with open(self.path, "w") as f:
            json.dump(self._roles, f, indent=2)

    @staticmethod
    def key(uid: str) -> str:
        return f"user_role_{uid}"

    def get(self, uid: str) -> Optional[Role]:
        value = self._roles.get(self.key(uid))
        if value is None:
            return None
        try:
            return Role.parse(value)
        except ValueError:
            return None

    def set(self, uid: str, role: Role) -> None:
        self._roles[self.key(uid)] = Role.parse(role).value
        self._save()

    def forget(self, uid: str) -> None:
        if self._roles.pop(self.key(uid), None) is not None:
            self._save()


def get_user_row(engine, uid: str):
    return fetch_one(engine, select(users).where(users.c.id == uid), "user")


def sync_user(engine, identity: Identity, role: Role) -> dict:
    """Upsert the identity into ``users``.

    Email and display name follow the identity; the role is only written when
    the row is first created.
    """
    existing = get_user_row(engine, identity.uid)
    if existing is None:
        execute_write(engine, insert(users).values(
            id=identity.uid,
            email=identity.email,
            display_name=identity.display_name,
            role=Role.parse(role).value,
        ), "syncing user")
    else:
        execute_write(
            engine,
            update(users).where(users.c.id == identity.uid).values(
                email=identity.email,
                display_name=identity.display_name,
            ),
            "syncing user",
        )
    return get_user_row(engine, identity.uid)


def on_auth_state_changed(engine, cache: RoleCache, identity: Optional[Identity]) -> Optional[AccessContext]:
    """Consume a session change from the auth provider.

    A signed-in identity is synced into ``users`` and returned as an
    AccessContext; a signed-out session (None) yields None.
    """
    if identity is None:
        return None
    cached = cache.get(identity.uid)
    row = sync_user(engine, identity, cached if cached is not None else Role.parse(DEFAULT_ROLE))
    role = Role.parse(row["role"])
    cache.set(identity.uid, role)
    print(f"[auth] Synced user {identity.uid} (role={role.value})")
    return AccessContext(
        user_id=identity.uid,
        email=identity.email,
        display_name=identity.display_name,
        role=role,
    )


def register_identity(engine, cache: RoleCache, identity: Identity, role) -> AccessContext:
    """Fix the role chosen at registration and sync the new user."""
    cache.set(identity.uid, Role.parse(role))
    return on_auth_state_changed(engine, cache, identity)
