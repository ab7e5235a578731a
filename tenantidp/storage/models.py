from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    tenant_id: str
    handle: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True

    @classmethod
    def new(
        cls,
        email: str,
        *,
        tenant_id: str,
        handle: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            tenant_id=tenant_id,
            handle=handle,
            first_name=first_name,
            last_name=last_name,
        )


@dataclass(frozen=True)
class LoginSession:
    """Authenticated browser or API session, read-only once created."""

    id: str
    tenant_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, tenant_id: str, user_id: str, *, ttl_minutes: int = 60 * 24) -> "LoginSession":
        now = _utcnow()
        return cls(
            # 256 bits from the OS CSPRNG; never derived from counters or user data
            id=secrets.token_urlsafe(32),
            tenant_id=tenant_id,
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def to_record(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_record(cls, session_id: str, record: dict) -> "LoginSession":
        return cls(
            id=session_id,
            tenant_id=record["tenant_id"],
            user_id=record["user_id"],
            created_at=datetime.fromisoformat(record["created_at"]),
            expires_at=datetime.fromisoformat(record["expires_at"]),
        )


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    tenant_id: str
    redirect_uris: FrozenSet[str]
    confidential: bool
    secret_hash: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class UserClaims:
    """Identity claims published in tokens and at the userinfo endpoint."""

    sub: str
    tenant_id: str
    email: str
    name: str
    preferred_username: str

    def as_dict(self) -> dict:
        return {
            "sub": self.sub,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "name": self.name,
            "preferred_username": self.preferred_username,
        }
