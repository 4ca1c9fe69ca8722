from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from docauth.config import Settings
from docauth.logging import get_logger
from docauth.service.credentials import CredentialStore, CredentialVerifier
from docauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCredentials,
    SecondFactorCodeRequired,
)
from docauth.service.recovery import PasswordRecoveryManager, RecoveryStore
from docauth.service.sessions import SessionStore, SessionTokenManager
from docauth.service.totp import TOTPVerifier
from docauth.storage.models import UserCredential
from docauth.storage.redis_cache import CacheBackend

logger = get_logger(__name__)


class AuthStore(CredentialStore, SessionStore, RecoveryStore, Protocol):
    def create_user(
        self,
        username: str,
        email: str = "",
        *,
        password_hash: str | None = None,
        password_algo: str | None = None,
    ) -> UserCredential: ...

    def get_user(self, user_id: str) -> Optional[UserCredential]: ...

    def set_user_totp_secret(self, user_id: str, secret: Optional[str]) -> None: ...

    def set_user_disabled(self, user_id: str, disabled: bool) -> None: ...


@dataclass
class AuthContext:
    """The authenticated principal of one request."""

    user_id: str
    username: str
    token: str
    is_guest: bool = False


@dataclass
class SessionInfo:
    created_at: datetime
    ip: Optional[str]
    user_agent: Optional[str]
    last_connection_at: Optional[datetime]
    current: bool


class AuthService:
    """Login policy and account self-service on top of the auth components.

    The components stay single-purpose; this class decides guest access,
    disabled accounts, when a second factor is required and what the guest
    may not do.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: CacheBackend,
        settings: Settings,
        *,
        credentials: Optional[CredentialVerifier] = None,
        totp: Optional[TOTPVerifier] = None,
        sessions: Optional[SessionTokenManager] = None,
        recovery: Optional[PasswordRecoveryManager] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.credentials = credentials or CredentialVerifier(store)
        self.totp = totp or TOTPVerifier(issuer=settings.totp_issuer)
        self.sessions = sessions or SessionTokenManager(
            store,
            long_lived_days=settings.long_lived_token_days,
            retention_hours=settings.session_retention_hours,
        )
        self.recovery = recovery
        self.logger = logger
        # in-process replay claims when Redis is absent: (user_id, step) -> expiry
        self._state_lock = threading.Lock()
        self._used_totp_steps: dict[Tuple[str, int], float] = {}

    # login
    def is_guest_username(self, username: str) -> bool:
        return username == self.settings.guest_username

    async def _claim_totp_step(self, user_id: str, step: int) -> bool:
        if not self.settings.totp_replay_protection:
            return True
        ttl = self.totp.claim_ttl_seconds
        if self.cache:
            return await self.cache.claim_totp_step(user_id, step, ttl)
        now = time.monotonic()
        with self._state_lock:
            expired = [k for k, exp in self._used_totp_steps.items() if exp <= now]
            for k in expired:
                self._used_totp_steps.pop(k, None)
            if (user_id, step) in self._used_totp_steps:
                return False
            self._used_totp_steps[(user_id, step)] = now + ttl
            return True

    async def _check_second_factor(self, user: UserCredential, code: Optional[str]) -> None:
        code = (code or "").strip()
        if not code:
            self.logger.info("login_second_factor_required", user_id=user.id)
            raise SecondFactorCodeRequired()
        step = self.totp.matching_step(user.totp_secret, code)
        if step is None:
            self.logger.warning("login_second_factor_invalid", user_id=user.id)
            raise InvalidCredentials()
        if not await self._claim_totp_step(user.id, step):
            self.logger.warning("login_second_factor_replayed", user_id=user.id, step=step)
            raise InvalidCredentials()

    async def login(
        self,
        username: str,
        password: Optional[str],
        code: Optional[str] = None,
        *,
        remember: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[UserCredential, str]:
        """Authenticate and open a session.

        Returns the user and the new token value.

        Raises:
            InvalidCredentials: wrong username/password/code, disabled account,
                or guest login while it is turned off.
            SecondFactorCodeRequired: password matched but no code was sent.
        """
        username = (username or "").strip()
        password = (password or "").strip()

        if self.is_guest_username(username):
            if not self.settings.guest_login_enabled:
                self.logger.info("guest_login_refused")
                raise InvalidCredentials()
            user = self.store.get_user_by_username(username)
            if user is None:
                self.logger.warning("guest_user_missing")
                raise InvalidCredentials()
        else:
            user = self.credentials.verify(username, password)

        if user.is_disabled:
            self.logger.info("login_disabled_account", user_id=user.id)
            raise InvalidCredentials()

        # ENABLE_TOTP only gates enrolment; a stored secret is always checked
        if user.totp_secret:
            await self._check_second_factor(user, code)

        token = self.sessions.create(
            user.id, long_lived=remember, ip=ip, user_agent=user_agent
        )
        self.sessions.prune_expired(user.id)
        self.logger.info("login_succeeded", user_id=user.id, long_lived=remember)
        return user, token

    # sessions
    async def authenticate(self, token: Optional[str]) -> Optional[AuthContext]:
        record = self.sessions.validate(token)
        if record is None:
            return None
        user = self.store.get_user(record.user_id)
        if user is None or user.is_disabled:
            return None
        self.sessions.touch(record.id)
        return AuthContext(
            user_id=user.id,
            username=user.username,
            token=record.id,
            is_guest=self.is_guest_username(user.username),
        )

    async def logout(self, token: Optional[str]) -> None:
        if not token or not self.sessions.revoke(token):
            raise AuthenticationError("session not found")

    def list_sessions(self, ctx: AuthContext) -> List[SessionInfo]:
        if ctx.is_guest:
            return []
        return [
            SessionInfo(
                created_at=record.created_at,
                ip=record.ip,
                user_agent=record.user_agent,
                last_connection_at=record.last_used_at,
                current=record.id == ctx.token,
            )
            for record in self.sessions.list_for_user(ctx.user_id)
        ]

    def delete_other_sessions(self, ctx: AuthContext) -> int:
        self._forbid_guest(ctx)
        return self.sessions.revoke_all_except(ctx.user_id, ctx.token)

    # account self-service
    def _forbid_guest(self, ctx: AuthContext) -> None:
        if ctx.is_guest:
            raise ForbiddenError("not allowed for the guest account")

    def _current_user(self, ctx: AuthContext) -> UserCredential:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            raise AuthenticationError("session user no longer exists")
        return user

    def user_info(self, ctx: AuthContext) -> dict:
        user = self._current_user(ctx)
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "totp_enabled": user.totp_enabled,
            "is_guest": ctx.is_guest,
        }

    def enable_totp(self, ctx: AuthContext) -> dict:
        self._forbid_guest(ctx)
        if not self.settings.enable_totp:
            raise ForbiddenError("second factor is disabled on this instance")
        secret = self.totp.create_secret()
        self.store.set_user_totp_secret(ctx.user_id, secret)
        self.logger.info("totp_enabled", user_id=ctx.user_id)
        return {
            "secret": secret,
            "otpauth_uri": self.totp.provisioning_uri(secret, ctx.username),
        }

    def test_totp(self, ctx: AuthContext, code: Optional[str]) -> None:
        """Check a code against the enrolled secret; a no-op without one."""
        self._forbid_guest(ctx)
        user = self._current_user(ctx)
        if not user.totp_secret:
            return
        if not self.totp.authorize(user.totp_secret, code or ""):
            self.logger.info("totp_test_failed", user_id=user.id)
            raise ForbiddenError("validation code is not valid")

    def disable_totp(self, ctx: AuthContext, password: str) -> None:
        self._forbid_guest(ctx)
        user = self._current_user(ctx)
        if not self.credentials.check_password(user, password):
            raise ForbiddenError("password does not match")
        self.store.set_user_totp_secret(user.id, None)
        self.logger.info("totp_disabled", user_id=user.id)

    def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> int:
        """Replace the password and log out every other session."""
        self._forbid_guest(ctx)
        user = self._current_user(ctx)
        if not self.credentials.check_password(user, current_password):
            raise ForbiddenError("current password does not match")
        self.credentials.update_credential(user.id, new_password)
        return self.sessions.revoke_all_except(user.id, ctx.token)

    # recovery
    def _recovery(self) -> PasswordRecoveryManager:
        if self.recovery is None:
            raise RuntimeError("password recovery is not wired")
        return self.recovery

    def request_password_recovery(self, username: str) -> None:
        self._recovery().request_recovery(username)

    def reset_password(self, key: str, new_password: str) -> UserCredential:
        return self._recovery().reset_password(key, new_password)
