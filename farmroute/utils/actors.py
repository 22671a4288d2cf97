from __future__ import annotations

from dataclasses import dataclass

from flask import g, request

from farmroute.extensions import db
from farmroute.models import User, UserRole
from farmroute.utils.jwt_utils import decode_token, get_bearer_token


@dataclass(frozen=True)
class Actor:
    """Who is performing an engine operation."""

    id: int | None
    role: str = "system"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == "system"

    @property
    def is_privileged(self) -> bool:
        return self.is_admin or self.is_system

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=int(user.id), role=(user.role or UserRole.CONSUMER).strip().lower())


SYSTEM = Actor(id=None, role="system")


def as_actor(value) -> Actor:
    if value is None:
        return SYSTEM
    if isinstance(value, Actor):
        return value
    if isinstance(value, User):
        return Actor.from_user(value)
    if isinstance(value, dict):
        raw_id = value.get("id")
        return Actor(
            id=int(raw_id) if raw_id is not None else None,
            role=str(value.get("role") or value.get("type") or "system").strip().lower(),
        )
    raise TypeError(f"cannot interpret {type(value).__name__} as an actor")


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, uid)
    if user is not None:
        g.auth_user_id = int(user.id)
        g.auth_role = user.role
    return user


def is_admin(user: User | None) -> bool:
    return bool(user) and (user.role or "").strip().lower() == UserRole.ADMIN
