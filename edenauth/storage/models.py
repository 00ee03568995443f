from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Unset:
    """Marker for partial updates where ``None`` is a meaningful value."""

    _instance: "_Unset | None" = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class PublicUser:
    """User fields that are safe to hand to clients."""

    id: str
    email: str
    first_name: str
    last_name: str
    is_email_verified: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    password_hash: str = field(repr=False)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    is_email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def public(self) -> PublicUser:
        return PublicUser(
            id=self.id,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            is_email_verified=self.is_email_verified,
            created_at=self.created_at,
            last_login_at=self.last_login_at,
        )


@dataclass
class Session:
    """Server-side record binding one refresh token to a user."""

    id: str
    user_id: str
    refresh_token: str = field(repr=False)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl_minutes: int = 30 * 24 * 60,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())
