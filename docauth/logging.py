"""structlog setup for docauth.

Every module logs through ``get_logger(__name__)`` with a snake_case event name
and keyword context. Two processors run before rendering: one stamps the
request's correlation id, the other masks credential material. Passwords, TOTP
codes, secrets and token values must never reach a log line in clear, so the
masking is keyed on field names rather than on the call sites remembering to
do it.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("docauth_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def _stamp_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = _request_id.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


# substrings of field names whose values are credential material or addresses
_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "key", "authorization", "email", "code")
# names that match a fragment above but are safe to print as is
_SAFE_FIELDS = frozenset(
    {"token_prefix", "key_prefix", "error_code", "status_code", "long_lived"}
)
# shorter values (TOTP codes, short passwords) are masked entirely
_PARTIAL_MASK_MIN_LENGTH = 12


def _mask(value: str) -> str:
    if len(value) < _PARTIAL_MASK_MIN_LENGTH:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for field in list(event_dict):
        name = field.lower()
        if field == "event" or name in _SAFE_FIELDS:
            continue
        if not any(fragment in name for fragment in _SENSITIVE_FRAGMENTS):
            continue
        value = event_dict[field]
        if isinstance(value, str):
            event_dict[field] = _mask(value)
        elif value is not None and not isinstance(value, (bool, int)):
            event_dict[field] = "***"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """(Re)configure structlog.

    JSON lines by default; ``dev_mode`` or ``json_output=False`` switches to
    the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_correlation_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
