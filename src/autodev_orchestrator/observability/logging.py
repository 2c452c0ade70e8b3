"""
structlog configuration for the orchestrator.

Loggers are obtained per module with ``structlog.get_logger(__name__)`` and emit
snake_case event names with keyword fields. ``setup_logging`` wires a single
processor chain once per process: context-variable merge, level filtering,
ISO-UTC timestamps, secret redaction, then JSON lines or console rendering.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Final

import structlog

from autodev_orchestrator.domain.events import JSONValue

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOG_FILENAME: Final[str] = "orchestrator.jsonl"

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

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")

_LEVELS: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_open_sink: IO[str] | None = None


def setup_logging(
    *,
    level: str = "INFO",
    log_format: str = "json",
    log_dir: Path | str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Configure structlog for the process; later calls replace the configuration."""

    global _open_sink

    level_name = level.upper()
    if level_name not in _LEVELS:
        raise ValueError(f"unsupported log level: {level!r}")
    if log_format not in {"json", "console"}:
        raise ValueError(f"unsupported log format: {log_format!r}")

    if _open_sink is not None:
        _open_sink.close()
        _open_sink = None

    sink: IO[str]
    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        _open_sink = (directory / _DEFAULT_LOG_FILENAME).open("a", encoding="utf-8")
        sink = _open_sink
    else:
        sink = stream if stream is not None else sys.stderr

    renderer: Any
    if log_format == "json" or log_dir:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            redact_event_dict,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS[level_name]),
        logger_factory=structlog.PrintLoggerFactory(file=sink),
        cache_logger_on_first_use=False,
    )


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields (``task_id``, ``slot_id``...) for log calls in scope."""

    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact_event_dict(
    _logger: object, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking secrets by key name and inline pattern."""

    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def redact(value: JSONValue) -> JSONValue:
    return _redact_value(value, key_context=None)


def _redact_value(value: Any, *, key_context: str | None) -> Any:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _redact_value(item, key_context=str(key)) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(key_lower == term or key_lower.endswith(f"_{term}") for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _PROVIDER_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = ["correlation_scope", "redact", "redact_event_dict", "setup_logging"]
