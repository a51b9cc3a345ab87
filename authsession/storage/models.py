from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps read back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    salt: str
    hash_version: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        session_id: str,
        user_id: str,
        ttl: timedelta,
        *,
        now: datetime | None = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            id=session_id,
            user_id=user_id,
            created_at=issued,
            expires_at=issued + ttl,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "expires_at": self.expires_at.isoformat(),
        }
