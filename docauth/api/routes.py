from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from docauth.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    PasswordLostRequest,
    PasswordResetRequest,
    SessionDeleteResponse,
    SessionEntry,
    SessionListResponse,
    TotpDisableRequest,
    TotpEnableResponse,
    TotpTestRequest,
    UserInfoResponse,
)
from docauth.logging import get_logger
from docauth.service.auth import AuthContext
from docauth.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/user")

IP_HEADER = "x-forwarded-for"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise a 429 envelope once ``key`` has used up its bucket."""
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)


def _peer_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _client_ip(request: Request) -> Optional[str]:
    """Best-effort address recorded on the session token.

    The forwarded header is client supplied, so rate limit buckets key on
    the peer address instead.
    """
    forwarded = request.headers.get(IP_HEADER)
    if forwarded:
        return forwarded
    return request.client.host if request.client else None


def _extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    return request.cookies.get(get_runtime().settings.auth_cookie_name)


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(_extract_token(request, authorization))
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def _apply_session_cookie(response: Response, token: str, *, long_lived: bool) -> None:
    settings = get_runtime().settings
    # without max_age the browser drops the cookie when it closes
    max_age = settings.long_lived_token_days * 24 * 3600 if long_lived else None
    response.set_cookie(
        settings.auth_cookie_name,
        token,
        httponly=True,
        secure=settings.auth_cookie_secure,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.auth_cookie_name,
        path="/",
        secure=settings.auth_cookie_secure,
        httponly=True,
        samesite="lax",
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username, password and, when enrolled, a TOTP code.

    Sets the auth cookie. A remembered login gets a persistent cookie and a
    long-lived token; otherwise the cookie lasts for the browser session.

    Raises:
        401: invalid credentials, or ``second_factor_required`` when a code is needed
        429: rate limit exceeded for this username
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, token = await runtime.auth.login(
        body.username,
        body.password,
        body.code,
        remember=body.remember,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookie(response, token, long_lived=body.remember)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=user.id,
            username=user.username,
            long_lived=body.remember,
            token=token,
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = _extract_token(request, authorization)
    ctx = await runtime.auth.authenticate(token)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    await runtime.auth.logout(ctx.token)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("", response_model=Envelope, tags=["user"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=UserInfoResponse(**runtime.auth.user_info(principal)))


@router.post("/password", response_model=Envelope, tags=["user"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    revoked = runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed", "revoked_sessions": revoked})


@router.get("/session", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    """List the caller's active sessions; the guest account sees none."""
    runtime = get_runtime()
    entries = [
        SessionEntry(
            created_at=info.created_at,
            ip=info.ip,
            user_agent=info.user_agent,
            last_connection_at=info.last_connection_at,
            current=info.current,
        )
        for info in runtime.auth.list_sessions(principal)
    ]
    return Envelope(status="ok", data=SessionListResponse(sessions=entries))


@router.delete("/session", response_model=Envelope, tags=["sessions"])
async def delete_other_sessions(principal: AuthContext = Depends(get_user)):
    """Log out every session of the caller except the current one."""
    runtime = get_runtime()
    deleted = runtime.auth.delete_other_sessions(principal)
    return Envelope(status="ok", data=SessionDeleteResponse(deleted=deleted))


@router.post("/password_lost", response_model=Envelope, tags=["recovery"])
async def password_lost(body: PasswordLostRequest, request: Request):
    """Send a recovery link if the account exists; the answer is always ok."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password_lost:{_peer_host(request)}",
        runtime.settings.password_lost_rate_limit_per_minute,
        60,
    )
    # mail delivery runs inside the event bus; keep SMTP off the event loop
    await asyncio.to_thread(runtime.auth.request_password_recovery, body.username)
    return Envelope(status="ok", data={"status": "ok"})


@router.post("/password_reset", response_model=Envelope, tags=["recovery"])
async def password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password_reset:{_peer_host(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    user = await asyncio.to_thread(runtime.auth.reset_password, body.key, body.password)
    return Envelope(status="ok", data={"status": "reset", "username": user.username})


@router.post("/enable_totp", response_model=Envelope, tags=["totp"])
async def enable_totp(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    enrolment = runtime.auth.enable_totp(principal)
    return Envelope(status="ok", data=TotpEnableResponse(**enrolment))


@router.post("/test_totp", response_model=Envelope, tags=["totp"])
async def test_totp(body: TotpTestRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"totp:{principal.user_id}",
        runtime.settings.totp_rate_limit_per_minute,
        60,
    )
    runtime.auth.test_totp(principal, body.code)
    return Envelope(status="ok", data={"status": "ok"})


@router.post("/disable_totp", response_model=Envelope, tags=["totp"])
async def disable_totp(body: TotpDisableRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"totp:{principal.user_id}",
        runtime.settings.totp_rate_limit_per_minute,
        60,
    )
    runtime.auth.disable_totp(principal, body.password)
    return Envelope(status="ok", data={"status": "disabled"})
