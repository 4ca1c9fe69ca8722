from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

IP_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _abbreviate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


@dataclass
class UserCredential:
    id: str
    username: str
    email: str = ""
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    totp_secret: Optional[str] = None
    disabled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def totp_enabled(self) -> bool:
        return bool(self.totp_secret)

    @property
    def is_disabled(self) -> bool:
        return self.disabled_at is not None


@dataclass
class SessionToken:
    id: str
    user_id: str
    created_at: datetime
    long_lived: bool = False
    last_used_at: Optional[datetime] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        long_lived: bool = False,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> "SessionToken":
        return cls(
            # 32 random bytes, URL-safe so the value can travel in a cookie
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=_utcnow(),
            long_lived=long_lived,
            ip=_abbreviate(ip, IP_MAX_LENGTH),
            user_agent=_abbreviate(user_agent, USER_AGENT_MAX_LENGTH),
        )

    @property
    def last_activity_at(self) -> datetime:
        return self.last_used_at or self.created_at


@dataclass
class RecoveryKey:
    id: str
    username: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, username: str) -> "RecoveryKey":
        return cls(id=secrets.token_urlsafe(32), username=username)


def new_user_id() -> str:
    return str(uuid.uuid4())
