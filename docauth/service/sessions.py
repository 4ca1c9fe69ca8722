from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from docauth.logging import get_logger
from docauth.storage.models import SessionToken

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session_token(
        self,
        user_id: str,
        *,
        long_lived: bool = False,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionToken: ...

    def get_session_token(self, token_id: str) -> Optional[SessionToken]: ...

    def touch_session_token(self, token_id: str, used_at: datetime) -> bool: ...

    def delete_session_token(self, token_id: str) -> bool: ...

    def delete_user_session_tokens(
        self, user_id: str, except_token_id: Optional[str] = None
    ) -> int: ...

    def delete_idle_session_tokens(self, user_id: str, cutoff: datetime) -> int: ...

    def list_user_session_tokens(self, user_id: str) -> List[SessionToken]: ...


class SessionTokenManager:
    """Opaque bearer tokens with two lifetimes.

    Long-lived ("remember me") tokens expire a fixed number of days after
    creation. Short-lived tokens live as long as they keep being used: one idle
    for longer than the retention window counts as expired and is removed the
    next time it is looked up or pruned.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        long_lived_days: int = 20,
        retention_hours: int = 24,
    ) -> None:
        self.store = store
        self.long_lived_ttl = timedelta(days=long_lived_days)
        self.retention = timedelta(hours=retention_hours)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def is_expired(self, token: SessionToken, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        if token.long_lived:
            return token.created_at + self.long_lived_ttl < now
        return token.last_activity_at + self.retention < now

    def create(
        self,
        user_id: str,
        *,
        long_lived: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        token = self.store.create_session_token(
            user_id, long_lived=long_lived, ip=ip, user_agent=user_agent
        )
        logger.info(
            "session_token_created",
            user_id=user_id,
            long_lived=long_lived,
            token_prefix=token.id[:8],
        )
        return token.id

    def validate(self, token: Optional[str]) -> Optional[SessionToken]:
        """Return the live token record or None; missing and expired look the same."""
        if not token:
            return None
        record = self.store.get_session_token(token)
        if record is None:
            return None
        if self.is_expired(record):
            logger.info(
                "session_token_expired",
                user_id=record.user_id,
                token_prefix=token[:8],
                long_lived=record.long_lived,
            )
            try:
                self.store.delete_session_token(token)
            except Exception as exc:
                logger.warning(
                    "session_token_expiry_cleanup_failed",
                    token_prefix=token[:8],
                    error=str(exc),
                )
            return None
        return record

    def touch(self, token: str) -> None:
        try:
            if not self.store.touch_session_token(token, self._now()):
                logger.debug("session_token_touch_missing", token_prefix=token[:8])
        except Exception as exc:
            logger.warning("session_token_touch_failed", token_prefix=token[:8], error=str(exc))

    def revoke(self, token: str) -> bool:
        removed = self.store.delete_session_token(token)
        logger.info("session_token_revoked", token_prefix=token[:8], removed=removed)
        return removed

    def revoke_all_except(self, user_id: str, keep_token: Optional[str]) -> int:
        removed = self.store.delete_user_session_tokens(user_id, except_token_id=keep_token)
        logger.info("session_tokens_revoked", user_id=user_id, count=removed)
        return removed

    def prune_expired(self, user_id: str) -> int:
        """Drop the user's idle short-lived tokens; never raises."""
        cutoff = self._now() - self.retention
        try:
            removed = self.store.delete_idle_session_tokens(user_id, cutoff)
        except Exception as exc:
            logger.warning("session_token_prune_failed", user_id=user_id, error=str(exc))
            return 0
        if removed:
            logger.info("session_tokens_pruned", user_id=user_id, count=removed)
        return removed

    def list_for_user(self, user_id: str) -> List[SessionToken]:
        now = self._now()
        return [
            token
            for token in self.store.list_user_session_tokens(user_id)
            if not self.is_expired(token, now)
        ]
