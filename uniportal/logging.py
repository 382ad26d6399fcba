from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for per-request tracing
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate the correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def start_request_context(correlation_id: Optional[str] = None) -> str:
    """Drop context bound by a previous request and tag logs with a correlation ID."""
    structlog.contextvars.clear_contextvars()
    return set_correlation_id(correlation_id)


def bind_account(account_id: int, role: Optional[str] = None) -> None:
    """Attach the authenticated account to every later log line of this request."""
    fields: Dict[str, Any] = {"account_id": account_id}
    if role:
        fields["role"] = role
    structlog.contextvars.bind_contextvars(**fields)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Masked entirely
_SECRET_KEYS = ("password", "secret", "token", "authorization", "code")
# Keep enough to correlate support tickets, never the full address
_ADDRESS_KEYS = ("email", "identifier", "to")
_NEVER_MASKED = {"event", "error_code", "status_code", "error_type"}


def mask_address(value: str) -> str:
    if "@" in value:
        local, domain = value.split("@", 1)
        return f"{local[:2]}***@{domain}"
    if len(value) > 4:
        return value[:2] + "***"
    return "***"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, codes and account addresses before rendering."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _NEVER_MASKED or not isinstance(value, str):
            continue
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "***"
        elif lower_key in _ADDRESS_KEYS or lower_key.endswith("_email"):
            event_dict[key] = mask_address(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines in production; colored console output when ``development_mode``
    is set or ``json_output`` is off.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

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
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach a client even in development
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,60}"),
    re.compile(r"(?i)(postgres(ql)?|redis)://\S+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)(password|secret|token|code)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_DETAIL_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, connection URLs, paths and credentials from an error string."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _LEAKY_FRAGMENTS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_DETAIL_LENGTH:
        result = result[: MAX_ERROR_DETAIL_LENGTH - 3] + "..."
    return result
