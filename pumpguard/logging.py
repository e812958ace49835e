from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

_operation_id: ContextVar[Optional[str]] = ContextVar("pumpguard_operation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Values under these keys never reach the log in clear
_SECRET_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization")
_IDENTITY_KEYS = ("email", "phone")


def get_correlation_id() -> Optional[str]:
    return _operation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a new lifecycle operation; every log line until the next call carries its id."""
    operation_id = correlation_id or uuid.uuid4().hex[:16]
    _operation_id.set(operation_id)
    return operation_id


def hash_identity(identity: Optional[str]) -> Optional[str]:
    """Stable digest of an email address for log correlation."""
    if not identity:
        return None
    return hashlib.sha256(identity.strip().lower().encode()).hexdigest()


def _stamp_operation(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    operation_id = _operation_id.get()
    if operation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = operation_id
    return event_dict


def _mask_sensitive(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered.endswith("_hash"):
            continue
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(marker in lowered for marker in _IDENTITY_KEYS):
            # Identities are swapped for a short digest so lines still correlate
            event_dict[key] = f"sha256:{hash_identity(value)[:12]}"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(level: Optional[str] = None, *, console: Optional[bool] = None) -> None:
    """(Re)configure structlog for the process.

    ``level`` defaults to ``LOG_LEVEL``. Console rendering is used when
    ``console`` is true, or when ``LOG_DEV_MODE`` is set or ``LOG_JSON`` is
    off; otherwise one JSON object is printed per event.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if console is None:
        console = _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true")

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_operation,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_USER_FACING_SCRUBBERS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b\s+.{0,50}",
        r"(?i)\b(relation|column|constraint)\s+\"[^\"]+\"",
        r"(?i)database\s+error",
        r"(?i)/(?:home|var|etc|usr|opt|tmp)/\S+",
        r"(?i)(password|secret|token|key|credential|api.?key|bearer)\s*[:=]\s*\S+",
        r"eyJ[\w-]+\.[\w-]+\.[\w-]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]
MAX_USER_MESSAGE_LENGTH = 300


def sanitize_error_message(error: Optional[str], *, replacement: str = "[redacted]") -> str:
    """Make a provider error message safe to show in the dashboard.

    SQL fragments, filesystem paths, inline credentials, JWTs and stack
    trace headers are replaced, and the result is capped in length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    cleaned = error
    for scrubber in _USER_FACING_SCRUBBERS:
        cleaned = scrubber.sub(replacement, cleaned)
    if len(cleaned) > MAX_USER_MESSAGE_LENGTH:
        cleaned = cleaned[: MAX_USER_MESSAGE_LENGTH - 3] + "..."
    return cleaned


__all__ = [
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "hash_identity",
    "sanitize_error_message",
    "set_correlation_id",
]
