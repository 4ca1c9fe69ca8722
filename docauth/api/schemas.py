from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 50
USERNAME_MAX_LENGTH = 100

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "second_factor_required",
    "forbidden",
    "not_found",
    "key_not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_username(value: str) -> str:
    # zero-width characters would let two visually equal names differ
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip()


def _validate_new_password(value: str) -> str:
    value = value.strip()
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=USERNAME_MAX_LENGTH)
    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH * 2)
    code: Optional[str] = Field(default=None, max_length=10)
    remember: bool = False

    @field_validator("username")
    @classmethod
    def _normalize_login_username(cls, value: str) -> str:
        return _normalize_username(value)


class LoginResponse(BaseModel):
    user_id: str
    username: str
    long_lived: bool
    token: str


class SessionEntry(BaseModel):
    created_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    last_connection_at: Optional[datetime] = None
    current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionEntry]


class SessionDeleteResponse(BaseModel):
    deleted: int


class PasswordLostRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=USERNAME_MAX_LENGTH)

    @field_validator("username")
    @classmethod
    def _normalize_lost_username(cls, value: str) -> str:
        return _normalize_username(value)


class PasswordResetRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_new_password(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH * 2)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_changed_password(cls, value: str) -> str:
        return _validate_new_password(value)


class TotpEnableResponse(BaseModel):
    secret: str
    otpauth_uri: str


class TotpTestRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not value.isdigit():
            raise ValueError("code must be numeric")
        return value


class TotpDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=100)


class UserInfoResponse(BaseModel):
    id: str
    username: str
    email: str = ""
    totp_enabled: bool = False
    is_guest: bool = False
