from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by the auth services and turned into an error envelope.

    ``status_code`` and ``error_code`` are class defaults; either can be
    overridden per instance.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.status_code
        self.error_code = error_code or self.error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """No usable credentials or token (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Login refused.

    Wrong username, wrong password and disabled account all share this one
    message, so a caller learns nothing about which check failed.
    """

    def __init__(self, message: str = "access denied", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SecondFactorCodeRequired(AuthenticationError):
    """Password accepted but the account has TOTP and no code was sent."""
    error_code = "second_factor_required"

    def __init__(self, message: str = "validation code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class KeyNotFound(ServiceError):
    """Recovery key unknown, expired, or its user is gone (400)."""
    status_code = 400
    error_code = "key_not_found"

    def __init__(self, message: str = "password recovery key not found", **kwargs) -> None:
        super().__init__(message, **kwargs)
