from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_REDACTED_KEY_PARTS = ("password", "secret", "token", "api_key", "authorization", "email", "phone")
MAX_LOGGED_VALUE_CHARS = 2000

EXECUTION_KEYS = ("conversation_id", "execution_id")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    return value[:2] + "***" + value[-2:]


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential and visitor contact fields, keeping two chars at each end."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        lowered = key.lower()
        if any(part in lowered for part in _REDACTED_KEY_PARTS):
            event_dict[key] = _mask(value)
    return event_dict


def _truncate_long_values(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # visitor messages and API bodies can be arbitrarily large
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > MAX_LOGGED_VALUE_CHARS:
            event_dict[key] = value[:MAX_LOGGED_VALUE_CHARS] + "...[truncated]"
    return event_dict


def _build_processors(json_output: bool, development_mode: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        _truncate_long_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])
    return processors


def configure_logging(
    log_level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog for the process.

    Arguments left as None fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE.
    JSON lines are the default; dev mode switches to the colored console
    renderer.
    """
    level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    structlog.configure(
        processors=_build_processors(json_output, development_mode),
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_execution(conversation_id: str, execution_id: Optional[str] = None) -> None:
    """Attach conversation and execution ids to every event logged in this context."""
    values: Dict[str, Any] = {"conversation_id": conversation_id}
    if execution_id:
        values["execution_id"] = execution_id
    structlog.contextvars.bind_contextvars(**values)


def unbind_execution() -> None:
    structlog.contextvars.unbind_contextvars(*EXECUTION_KEYS)


@contextmanager
def execution_logging(conversation_id: str, execution_id: Optional[str] = None) -> Iterator[None]:
    bind_execution(conversation_id, execution_id)
    try:
        yield
    finally:
        unbind_execution()


_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)rediss?://\S+"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp)/\S+"),
    re.compile(r"(?i)[a-z]:\\\S+"),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_MESSAGE_CHARS = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub paths, credentials, backing-store URLs and tracebacks from an error.

    The result is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_ERROR_MESSAGE_CHARS:
        result = result[: MAX_ERROR_MESSAGE_CHARS - 3] + "..."
    return result
