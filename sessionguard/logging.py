from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Set by the HTTP layer once per inbound request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Field names whose values are credentials or personal data
_SENSITIVE_FIELDS = ("password", "secret", "token", "authorization", "email", "cookie")


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Attach a request ID to every log line emitted in the current context."""
    rid = request_id or uuid.uuid4().hex
    request_id_var.set(rid)
    return rid


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def hash_identifier(value: str) -> str:
    """Stable short digest for logging emails and lockout identifiers."""
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def _add_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = request_id_var.get()
    if rid:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        # *_hash and *_prefix fields are already safe to log
        if lower_key.endswith(("_hash", "_prefix")):
            continue
        if isinstance(value, str) and any(f in lower_key for f in _SENSITIVE_FIELDS):
            event_dict[key] = _mask(value)
        elif lower_key == "key" and isinstance(value, str) and ":" in value:
            # Store keys such as refresh_token:<jwt> embed bearer material
            family, _ = value.split(":", 1)
            event_dict[key] = f"{family}:***"
    return event_dict


def configure_logging(
    level: Optional[str] = None, fmt: Optional[str] = None
) -> None:
    """(Re)configure structlog.

    ``level`` defaults to ``LOG_LEVEL`` (INFO). ``fmt`` is ``json`` or
    ``console`` and defaults to ``LOG_FORMAT``; ``LOG_DEV_MODE=true`` forces
    console output.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).lower()
    if os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY:
        fmt = "console"

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
