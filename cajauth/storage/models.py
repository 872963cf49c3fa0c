from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    email_verified_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        is_admin: bool = False,
        email_verified: bool = False,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            is_admin=is_admin,
            created_at=now,
            updated_at=now,
            email_verified_at=now if email_verified else None,
        )


@dataclass
class Session:
    id: str
    user_id: str
    token: str = field(repr=False)
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl_seconds: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_live(self, now: datetime | None = None) -> bool:
        """Active and not yet past its expiry."""
        return self.is_active and self.expires_at > (now or utcnow())


@dataclass
class Profile:
    user_id: str
    full_name: str = ""
    created_at: datetime = field(default_factory=utcnow)
