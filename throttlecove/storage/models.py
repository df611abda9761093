from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows, sqlite-style drivers) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles."""

    USER = "user"
    ADMIN = "admin"


# Columns a user may change through profile updates.
PROFILE_FIELDS = frozenset({"full_name", "email", "phone", "avatar_url"})


@dataclass
class User:
    """A credential-store row without its password hash."""

    id: str
    username: str
    email: str
    full_name: str
    role: Role = Role.USER
    email_verified: bool = False
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        full_name: str,
        *,
        role: Role = Role.USER,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            full_name=full_name,
            role=role,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    access_token_ref: Optional[str] = None
    refresh_token_ref: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_active(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) < as_utc(self.expires_at)


@dataclass
class LockoutStatus:
    """Counter state returned by an atomic failed-login update."""

    login_attempts: int
    locked_until: Optional[datetime] = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None
