from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request id, echoed back in X-Request-ID and attached to every log line
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_SECRET_FIELDS = ("password", "secret", "token", "authorization", "cookie")
_MASKED = "[redacted]"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _MASKED
    return f"{local[:2]}***@{domain}"


def _mask_client(value: str) -> str:
    """Keep the network part of a client address: ``192.0.2.7`` -> ``192.0.2.x``."""
    if "." in value:
        return value.rsplit(".", 1)[0] + ".x"
    if ":" in value:
        return value.rsplit(":", 1)[0] + ":x"
    return value


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials and mask account emails and client addresses.

    ``user_id``, ``issue_id`` and ``comment_id`` are opaque and left as-is so
    events for one account or issue can still be joined.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _SECRET_FIELDS):
            event_dict[key] = _MASKED
        elif lower_key.endswith("email"):
            event_dict[key] = _mask_email(value)
        elif lower_key in {"client", "client_ip"}:
            event_dict[key] = _mask_client(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and renderer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    # connection strings carry credentials
    r'(?i)(?:postgres(?:ql)?|rediss?)://[^\s]+',
    # SQL fragments and driver errors
    r'(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}',
    r'(?i)database\s+error',
    r'(?i)connection\s+.*\s+(failed|refused|timeout)',
    # filesystem paths
    r'(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    # credentials
    r'(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+',
    r'(?i)traceback\s*\(most recent call last\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, filesystem paths, credentials and tracebacks from an error message.

    Used when non-production deployments echo unexpected failures back to the
    client in the error envelope ``details``.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
