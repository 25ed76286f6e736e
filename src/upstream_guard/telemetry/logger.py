"""
Structured logging for upstream-guard.

Every module logs through a child of the ``upstream_guard`` logger. Records
carry keyword fields plus the fields of the active :class:`LogContext`,
which the resilient wrapper binds to the protected label and operation name
for the duration of a call. Credentials are masked before anything is
written.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, TextIO

if TYPE_CHECKING:
    from collections.abc import Iterator

ROOT_LOGGER = "upstream_guard"
REDACTED = "***REDACTED***"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

    def to_logging_level(self) -> int:
        return logging.getLevelName(self.value)

    @classmethod
    def from_env(cls, default: LogLevel | None = None) -> LogLevel:
        """Read the level from UPSTREAM_GUARD_LOG_LEVEL."""
        value = os.getenv("UPSTREAM_GUARD_LOG_LEVEL", "").upper()
        try:
            return cls(value)
        except ValueError:
            return default or cls.INFO


@dataclass(frozen=True)
class LogContext:
    """Fields attached to every record logged inside a protected call.

    Attributes:
        label: Label of the upstream dependency (one breaker per label)
        operation: Name of the logical call being executed
        request_id: Identifier of the tool request that issued the call
        extra: Any other caller-supplied fields
    """

    label: str | None = None
    operation: str | None = None
    request_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            name: value
            for name, value in (
                ("label", self.label),
                ("operation", self.operation),
                ("request_id", self.request_id),
            )
            if value is not None
        }
        result.update(self.extra)
        return result

    def merge(self, **fields: Any) -> LogContext:
        """Return a copy with ``fields`` layered on top."""
        known = {k: fields.pop(k) for k in ("label", "operation", "request_id") if k in fields}
        return replace(self, **known, extra={**self.extra, **fields})


_current_context: ContextVar[LogContext] = ContextVar(
    "upstream_guard_log_context", default=LogContext()
)


def get_log_context() -> LogContext:
    """Context bound to the running task."""
    return _current_context.get()


@contextmanager
def log_context(**fields: Any) -> Iterator[LogContext]:
    """Bind fields to every record logged until the block exits.

    Nested blocks inherit the outer fields; the outer context is restored on
    exit, including when the block raises or is cancelled.

    Example:
        >>> with log_context(request_id="req-42"):
        ...     await wrapper.execute(fetch_series, "fred.series")
    """
    token = _current_context.set(_current_context.get().merge(**fields))
    try:
        yield _current_context.get()
    finally:
        _current_context.reset(token)


class SensitiveDataMasker:
    """Redacts upstream credentials from messages and fields."""

    DEFAULT_PATTERNS: ClassVar[list[tuple[str, str]]] = [
        (r"\bBearer\s+[^\s\"',]+", f"Bearer {REDACTED}"),
        (r"\bsk-[A-Za-z0-9_-]{16,}", f"sk-{REDACTED}"),
        (r"\b([A-Z][A-Z0-9_]*_(?:API_KEY|TOKEN|SECRET)=)\S+", rf"\1{REDACTED}"),
        (r"([?&](?:api_?key|access_token|token)=)[^&\s]+", rf"\1{REDACTED}"),
        (r"((?:api[_-]?key|x-api-key|authorization)[\"']?\s*[:=]\s*[\"']?)(?!Bearer\b)[^\"'\s,&]+", rf"\1{REDACTED}"),
    ]
    SENSITIVE_KEYS: ClassVar[tuple[str, ...]] = (
        "key",
        "token",
        "secret",
        "password",
        "authorization",
    )

    def __init__(self, patterns: list[tuple[str, str]] | None = None) -> None:
        self._patterns = [
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in (patterns or self.DEFAULT_PATTERNS)
        ]

    def mask(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def mask_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Redact values under credential-like keys, recursing into dicts."""
        masked: dict[str, Any] = {}
        for key, value in data.items():
            if any(word in key.lower() for word in self.SENSITIVE_KEYS):
                masked[key] = REDACTED
            elif isinstance(value, dict):
                masked[key] = self.mask_dict(value)
            elif isinstance(value, str):
                masked[key] = self.mask(value)
            else:
                masked[key] = value
        return masked


class _StructuredFormatter(logging.Formatter):
    """Shared field collection for the JSON and text formatters."""

    def __init__(self, masker: SensitiveDataMasker | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.masker = masker or SensitiveDataMasker()

    def fields(self, record: logging.LogRecord) -> dict[str, Any]:
        # Record fields win over context fields of the same name
        merged = get_log_context().to_dict()
        merged.update(getattr(record, "fields", {}))
        return self.masker.mask_dict(merged)


class JsonFormatter(_StructuredFormatter):
    """One JSON object per record, context and keyword fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": self.masker.mask(record.getMessage()),
        }
        payload.update(self.fields(record))
        if record.exc_info:
            payload["exception"] = self.masker.mask(self.formatException(record.exc_info))
        return json.dumps(payload, default=str)


class TextFormatter(_StructuredFormatter):
    """``time | LEVEL | logger | message | k=v ...``"""

    def __init__(self, masker: SensitiveDataMasker | None = None) -> None:
        super().__init__(
            masker,
            fmt="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:  # noqa: N802
        line = self.masker.mask(super().formatMessage(record))
        if fields := self.fields(record):
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def configure_logging(
    level: LogLevel | None = None,
    format: str = "text",
    stream: TextIO | None = None,
    masker: SensitiveDataMasker | None = None,
) -> logging.Logger:
    """(Re)configure the ``upstream_guard`` logger tree.

    Args:
        level: Minimum level; defaults to UPSTREAM_GUARD_LOG_LEVEL or INFO
        format: ``"text"`` or ``"json"``
        stream: Destination (default: stderr)
        masker: Custom credential masker

    Returns:
        The ``upstream_guard`` logger
    """
    if format not in ("text", "json"):
        raise ValueError(f"Unknown log format: {format!r}")
    formatter = JsonFormatter(masker) if format == "json" else TextFormatter(masker)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel((level or LogLevel.from_env()).to_logging_level())
    root.propagate = False
    return root


class GuardLogger:
    """Adapter turning keyword arguments into structured record fields.

    Example:
        >>> logger = get_logger("upstream_guard.resilience.wrapper")
        >>> logger.warning("search failed on attempt 1", attempt=1, error="HTTP 503")
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, exc_info: bool = False, **fields: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, msg, exc_info=exc_info, extra={"fields": fields})

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, exc_info: bool = False, **fields: Any) -> None:
        self._log(logging.ERROR, msg, exc_info=exc_info, **fields)


def get_logger(name: str) -> GuardLogger:
    """Logger for an ``upstream_guard.*`` module.

    Installs the default text handler on first use unless the application
    already configured the tree.
    """
    if not logging.getLogger(ROOT_LOGGER).handlers:
        configure_logging()
    return GuardLogger(logging.getLogger(name))
