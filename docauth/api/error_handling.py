from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from docauth.api.schemas import Envelope, ErrorBody
from docauth.logging import get_correlation_id, get_logger
from docauth.service.errors import ServiceError
from docauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    """Build the error envelope; the request id is the request's correlation id."""
    body = ErrorBody(
        code=code or _STATUS_TO_CODE.get(status_code, "server_error"),
        message=message,
        details=details or None,
    )
    envelope = Envelope(status="error", error=body)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    headers: Dict[str, str] = {}
    if status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers=headers or None,
    )


def _log(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Answer every failure with the error envelope.

    Client errors keep their message; server errors are logged in full and
    reported as a bare ``server_error``.
    """

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        if exc.status_code >= 500:
            return _error_response(exc.status_code, "internal server error", code="server_error")
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, "constraint_violation", 409, message=exc.message, field=exc.field)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # input values are left out; they may be passwords
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        _log(request, "request_validation_error", 422, error_count=len(problems))
        return _error_response(422, "request validation failed", problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        error = detail.get("error") if isinstance(detail, dict) else None
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message", "http error")
            _log(request, "http_error", exc.status_code, error_code=code, message=message)
            return _error_response(exc.status_code, message, error.get("details"), code=code)
        message = detail if isinstance(detail, str) else "http error"
        if exc.status_code >= 500:
            _log(request, "http_error_fallback", exc.status_code, message=message)
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
