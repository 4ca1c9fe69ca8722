from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from docauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/docauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/docauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, relaxed cookies).",
    )

    # Second factor
    enable_totp: bool = env_field(
        True,
        "ENABLE_TOTP",
        description="Allow users to enrol a TOTP second factor",
    )
    totp_secret_key: str | None = env_field(
        None,
        "TOTP_SECRET_KEY",
        description="Key material used to encrypt TOTP secrets at rest",
    )
    totp_issuer: str = env_field("Docauth", "TOTP_ISSUER")
    totp_replay_protection: bool = env_field(
        True,
        "TOTP_REPLAY_PROTECTION",
        description="Refuse a TOTP code that was already accepted in its window",
    )

    # Guest account
    guest_login_enabled: bool = env_field(False, "GUEST_LOGIN_ENABLED")
    guest_username: str = env_field("guest", "GUEST_USERNAME")

    # Token lifetimes
    long_lived_token_days: int = env_field(
        20,
        "LONG_LIVED_TOKEN_DAYS",
        description="Lifetime of a 'remember me' token, counted from creation",
    )
    session_retention_hours: int = env_field(
        24,
        "SESSION_RETENTION_HOURS",
        description="Idle time after which a short-lived token is pruned",
    )
    recovery_key_ttl_minutes: int = env_field(
        24 * 60,
        "RECOVERY_KEY_TTL_MINUTES",
        description="How long a password recovery key stays usable",
    )

    # Cookie transport
    auth_cookie_name: str = env_field("auth_token", "AUTH_COOKIE_NAME")
    auth_cookie_secure: bool = env_field(True, "AUTH_COOKIE_SECURE")

    # Rate limits (requests per window per client)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    password_lost_rate_limit_per_minute: int = env_field(
        5, "PASSWORD_LOST_RATE_LIMIT_PER_MINUTE"
    )
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    totp_rate_limit_per_minute: int = env_field(10, "TOTP_RATE_LIMIT_PER_MINUTE")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Docauth", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _empty_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator(
        "long_lived_token_days",
        "session_retention_hours",
        "recovery_key_ttl_minutes",
    )
    @classmethod
    def _positive_lifetime(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lifetimes must be positive")
        return value

    @field_validator(
        "login_rate_limit_per_minute",
        "password_lost_rate_limit_per_minute",
        "reset_rate_limit_per_minute",
        "totp_rate_limit_per_minute",
    )
    @classmethod
    def _non_negative_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError("rate limits cannot be negative")
        return value

    @field_validator("guest_username")
    @classmethod
    def _strip_guest_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("guest username cannot be empty")
        return value

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
