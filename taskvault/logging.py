"""structlog setup for the API process.

The HTTP middleware binds ``request_id``, ``method`` and ``path`` into
structlog's contextvars, so every auth and task event carries the request
that caused it. Credentials are scrubbed before anything is rendered.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

REDACTED = "[redacted]"

# never rendered, not even partially
_SECRET_FIELDS = frozenset(
    {
        "password",
        "token",
        "authorization",
        "cookie",
        "set_cookie",
        "digest",
        "expected_hash",
        "new_hash",
    }
)
_SECRET_SUFFIXES = ("_secret", "_token", "_hash", "password")
_BEARER = re.compile(r"(?i)\bbearer\s+\S+")


def bind_request_context(request_id: Optional[str], method: str, path: str) -> str:
    """Start a fresh log context for one HTTP request and return its id."""
    clear_contextvars()
    rid = request_id or str(uuid.uuid4())
    bind_contextvars(request_id=rid, method=method, path=path)
    return rid


def get_request_id() -> Optional[str]:
    return get_contextvars().get("request_id")


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return REDACTED
    return f"{local[:1]}***@{domain}"


def _is_secret(key: str) -> bool:
    name = key.lower()
    return name in _SECRET_FIELDS or name.endswith(_SECRET_SUFFIXES)


def redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop token, digest and password values; shorten emails."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _is_secret(key):
            if value is not None:
                event_dict[key] = REDACTED
        elif key.lower() == "email" and isinstance(value, str):
            event_dict[key] = mask_email(value)
        elif isinstance(value, str) and "bearer" in value.lower():
            event_dict[key] = _BEARER.sub(f"Bearer {REDACTED}", value)
    return event_dict


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=_env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
