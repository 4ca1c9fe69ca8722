from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from docauth.logging import get_logger
from docauth.service.credentials import CredentialVerifier
from docauth.service.errors import KeyNotFound
from docauth.service.events import EventBus, PasswordLostEvent
from docauth.service.sessions import SessionTokenManager
from docauth.storage.models import RecoveryKey, UserCredential

logger = get_logger(__name__)


class RecoveryStore(Protocol):
    def get_user_by_username(self, username: str) -> Optional[UserCredential]: ...

    def create_recovery_key(self, username: str) -> RecoveryKey: ...

    def get_recovery_key(self, key_id: str) -> Optional[RecoveryKey]: ...

    def delete_recovery_key(self, key_id: str) -> bool: ...

    def delete_recovery_keys(self, username: str) -> int: ...


class PasswordRecoveryManager:
    """Single-use, time-limited password recovery keys.

    A key is issued on request, announced through a ``PasswordLostEvent`` and
    consumed by a successful reset. Keys older than the TTL behave as if they
    had never been issued.
    """

    def __init__(
        self,
        store: RecoveryStore,
        credentials: CredentialVerifier,
        bus: EventBus,
        *,
        sessions: Optional[SessionTokenManager] = None,
        key_ttl_minutes: int = 24 * 60,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.bus = bus
        self.sessions = sessions
        self.key_ttl = timedelta(minutes=key_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def request_recovery(self, username: str) -> None:
        """Issue a key for ``username`` if it exists.

        Returns normally either way so callers cannot probe for accounts.
        """
        username = (username or "").strip()
        user = self.store.get_user_by_username(username) if username else None
        if user is None:
            logger.info("password_lost_unknown_user")
            return
        key = self.store.create_recovery_key(user.username)
        logger.info("password_lost_key_issued", user_id=user.id, key_prefix=key.id[:8])
        self.bus.publish(PasswordLostEvent(user=user, recovery_key=key))

    def _active_key(self, key_id: str) -> Optional[RecoveryKey]:
        key = self.store.get_recovery_key(key_id)
        if key is None:
            return None
        if key.created_at + self.key_ttl <= self._now():
            logger.info("password_recovery_key_expired", key_prefix=key_id[:8])
            try:
                self.store.delete_recovery_key(key_id)
            except Exception as exc:
                logger.warning(
                    "password_recovery_key_cleanup_failed",
                    key_prefix=key_id[:8],
                    error=str(exc),
                )
            return None
        return key

    def reset_password(self, key_id: str, new_password: str) -> UserCredential:
        """Set a new password through a recovery key.

        Raises:
            KeyNotFound: the key is unknown, expired or its user is gone.
        """
        key = self._active_key(key_id) if key_id else None
        if key is None:
            logger.warning("password_reset_invalid_key", key_prefix=(key_id or "")[:8])
            raise KeyNotFound()
        user = self.store.get_user_by_username(key.username)
        if user is None:
            logger.warning("password_reset_user_missing", key_prefix=key_id[:8])
            raise KeyNotFound()

        self.credentials.update_credential(user.id, new_password)

        try:
            self.store.delete_recovery_keys(user.username)
        except Exception as exc:
            logger.warning(
                "password_recovery_key_delete_failed", user_id=user.id, error=str(exc)
            )
        if self.sessions is not None:
            try:
                self.sessions.revoke_all_except(user.id, None)
            except Exception as exc:
                logger.warning("revoke_sessions_failed", user_id=user.id, error=str(exc))
        logger.info("password_reset_completed", user_id=user.id)
        return user
