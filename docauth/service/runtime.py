from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from docauth.config import Settings, get_settings, reset_settings_cache
from docauth.logging import get_logger
from docauth.service.auth import AuthService
from docauth.service.credentials import CredentialVerifier
from docauth.service.email import EmailService
from docauth.service.events import EventBus, PasswordLostEvent
from docauth.service.recovery import PasswordRecoveryManager
from docauth.service.sessions import SessionTokenManager
from docauth.service.totp import TOTPVerifier
from docauth.storage.memory import MemoryStore
from docauth.storage.postgres import PostgresStore
from docauth.storage.redis_cache import CacheBackend, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password of a connection URL before it is logged.

    ``redis://:hunter2@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        password = parts.password
    except ValueError:
        return "***url_parse_error***"
    if not password:
        return url
    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    return urlunsplit(parts._replace(netloc=f"{user}:***@{hostinfo}"))


class LocalRateLimiter:
    """In-process token buckets, used when Redis is not available.

    Buckets are per process, so limits are only approximate behind several
    workers.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def consume(
        self, key: str, limit: int, window_seconds: int, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_per_second = limit / window_seconds
        now = self._clock()
        with self._lock:
            tokens, stamp = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - stamp) * refill_per_second)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        wait = 0 if allowed else int((cost - tokens) / refill_per_second) + 1
        return allowed, int(tokens), wait


class Runtime:
    """Process-wide wiring of stores, cache and services for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = self._build_store(self.settings)
        self.cache = self._build_cache(self.settings)
        self.rate_limiter = LocalRateLimiter()

        self.bus = EventBus()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            recovery_ttl_minutes=self.settings.recovery_key_ttl_minutes,
        )
        self.bus.subscribe(PasswordLostEvent, self.email.handle_password_lost)

        self.credentials = CredentialVerifier(self.store)
        self.totp = TOTPVerifier(issuer=self.settings.totp_issuer)
        self.sessions = SessionTokenManager(
            self.store,
            long_lived_days=self.settings.long_lived_token_days,
            retention_hours=self.settings.session_retention_hours,
        )
        self.recovery = PasswordRecoveryManager(
            self.store,
            self.credentials,
            self.bus,
            sessions=self.sessions,
            key_ttl_minutes=self.settings.recovery_key_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            credentials=self.credentials,
            totp=self.totp,
            sessions=self.sessions,
            recovery=self.recovery,
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            totp_enabled=self.settings.enable_totp,
            guest_login_enabled=self.settings.guest_login_enabled,
        )

    @staticmethod
    def _build_store(settings: Settings):
        try:
            if settings.use_memory_store:
                return MemoryStore(
                    fs_root=settings.shared_fs_root,
                    totp_encryption_key=settings.totp_secret_key,
                )
            return PostgresStore(
                settings.database_url,
                fs_root=settings.shared_fs_root,
                totp_encryption_key=settings.totp_secret_key,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                use_memory_store=settings.use_memory_store,
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    @staticmethod
    def _build_cache(settings: Settings) -> CacheBackend:
        """Connect to Redis, or fall back to in-process state where allowed.

        Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV a missing Redis is fatal:
        rate limits and TOTP replay claims must be shared between workers.
        """
        failure: Optional[Exception] = None
        if settings.redis_url:
            # sync client under test so the pool is not tied to one event loop
            cache_cls = SyncRedisCache if settings.test_mode else RedisCache
            try:
                cache = cache_cls(settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        if not (settings.test_mode or settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is required for rate limits and TOTP replay protection; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from failure
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(failure) if failure else "redis_url_missing",
            mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def close(self) -> None:
        """Release the Redis client and the database pool."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process Runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Drop the current Runtime and build a fresh one from the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                # connection may already be closed
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Consume ``cost`` tokens from the bucket named ``key``.

    A non-positive ``limit`` disables the check.

    Returns:
        bool, or ``(allowed, remaining, reset_seconds)`` with return_remaining
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    allowed, remaining, reset_seconds = runtime.rate_limiter.consume(
        key, limit, window_seconds, cost
    )
    if return_remaining:
        return allowed, remaining, reset_seconds
    return allowed
