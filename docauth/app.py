from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docauth.api.error_handling import register_exception_handlers
from docauth.api.routes import router
from docauth.config import Settings
from docauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from docauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Docauth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    # local dev hosts; no wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:8080",
        "http://127.0.0.1:8080",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with the client's X-Request-ID or a fresh UUID.

    The ID is bound into every log line of the request and echoed back in the
    X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/api/"):
        # responses carry session data; never cache them
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store and Redis reachability."""
    from docauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    try:
        runtime.store.get_user_by_username(runtime.settings.guest_username)
        checks["store"] = {"status": "ok", "type": type(runtime.store).__name__}
    except Exception as exc:
        healthy = False
        checks["store"] = {"status": "error", "error": type(exc).__name__}
        logger.error("health_store_failed", error=str(exc))

    if runtime.cache is None:
        checks["redis"] = {"status": "disabled"}
    else:
        try:
            runtime.cache.verify_connection()
            checks["redis"] = {"status": "ok"}
        except Exception as exc:
            healthy = False
            checks["redis"] = {"status": "error", "error": type(exc).__name__}
            logger.error("health_redis_failed", error=str(exc))

    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)
