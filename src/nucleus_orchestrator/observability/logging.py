"""Structured logging setup: structlog processor chain with redaction and correlation ids."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import Any, Final

import structlog

JSONScalar = str | int | float | bool | None

_REDACTED_VALUE: Final[str] = "***REDACTED***"
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

_CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "task_id",
    "plan_id",
    "goal_id",
    "checkpoint_id",
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
# Counters such as ``max_context_tokens`` or ``estimated_tokens`` are not secrets.
_NON_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "max_context_tokens",
        "estimated_tokens",
        "estimated_prompt_tokens",
        "max_tokens",
        "context_tokens",
    }
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_API_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")


def configure_logging(
    level: int | str = "INFO",
    fmt: str = "json",
    *,
    redact: bool = True,
    stream: Any = None,
) -> None:
    """
    Configure structlog for the process.

    Every component logger comes from ``structlog.get_logger(__name__)`` and
    emits event-name messages with keyword context; this wires the chain that
    turns them into one JSON object (or one console line) per event.
    """

    if fmt not in LOG_FORMATS:
        raise ValueError(f"log format must be one of {', '.join(LOG_FORMATS)}; got {fmt!r}")
    numeric_level = _parse_log_level(level)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if redact:
        processors.append(redact_event)
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=True, default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=stream if stream is not None else sys.stderr),
        cache_logger_on_first_use=False,
    )


def configure_from_config(config: Mapping[str, Any], *, stream: Any = None) -> None:
    """Apply the ``[observability]`` section of a loaded config."""
    section = config.get("observability", {})
    configure_logging(
        section.get("log_level", "INFO"),
        section.get("log_format", "json"),
        redact=bool(section.get("redact_secrets", True)),
        stream=stream,
    )


def redact_event(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask secret-looking keys and credential patterns in strings."""
    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def redact_value(value: Any) -> Any:
    return _redact_value(value, key_context=None)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation ids for every log event emitted in scope."""
    bound: dict[str, str] = {}
    for key, value in fields.items():
        if key not in _CORRELATION_KEYS:
            raise ValueError(f"unsupported correlation key: {key!r}")
        if value is not None:
            bound[key] = str(value)
    tokens = structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def get_correlation_context() -> dict[str, Any]:
    context = structlog.contextvars.get_contextvars()
    return {key: context[key] for key in _CORRELATION_KEYS if key in context}


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, bool):
        raise ValueError("log level must be a level name or integer")
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {value!r}")
    return resolved


def _redact_value(value: Any, *, key_context: str | None) -> Any:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, Mapping):
        return {key: _redact_value(item, key_context=str(key)) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in _NON_SENSITIVE_KEYS:
        return False
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _API_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = [
    "LOG_FORMATS",
    "configure_from_config",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "redact_event",
    "redact_value",
]
