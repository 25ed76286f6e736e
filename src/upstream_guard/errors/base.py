"""错误基类：提供分层错误体系和结构化错误上下文。

Base error classes for upstream-guard.

Provides a layered error hierarchy:
- UpstreamGuardError: Base class for all library errors
- ResilienceError: Breaker rejections, timeouts and exhausted retries
- UpstreamError: Classified error responses from the upstream service
- TransportError: Network-level failures reaching the upstream service
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from upstream_guard.errors.classification import ErrorClass


@dataclass
class ErrorContext:
    """Structured error context for diagnostics.

    Provides actionable information for debugging and error handling.
    """

    source: str | None = None
    """Error source (e.g., 'breaker', 'retry', 'transport')"""

    label: str | None = None
    """Label of the protected call site"""

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.label:
            parts.append(f"label={self.label!r}")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class UpstreamGuardError(Exception):
    """Base class for all upstream-guard errors.

    Attributes:
        message: Human-readable error message
        context: Structured error context
    """

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
    ) -> None:
        self.message = message
        self.context = context or ErrorContext()
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the full error message."""
        ctx_str = str(self.context)
        if ctx_str:
            return f"{self.message} {ctx_str}"
        return self.message

    def with_hint(self, hint: str) -> UpstreamGuardError:
        """Add a hint to this error."""
        self.context.hint = hint
        return self


class ResilienceErrorKind(str, Enum):
    """Why the resilience layer produced an error."""

    CIRCUIT_OPEN = "circuit_open"
    RETRIES_EXHAUSTED = "retries_exhausted"
    TIMEOUT = "timeout"
    METRICS_REGISTRATION = "metrics_registration"
    METRICS_UNREGISTRATION = "metrics_unregistration"

    @property
    def code(self) -> str:
        """Stable error code for this kind."""
        return _KIND_CODES[self]


_KIND_CODES: dict[ResilienceErrorKind, str] = {
    ResilienceErrorKind.CIRCUIT_OPEN: "ERR_CIRCUIT_BREAKER_OPEN",
    ResilienceErrorKind.RETRIES_EXHAUSTED: "ERR_RETRIES_EXHAUSTED",
    ResilienceErrorKind.TIMEOUT: "ERR_CIRCUIT_BREAKER_TIMEOUT",
    ResilienceErrorKind.METRICS_REGISTRATION: "ERR_METRICS_REGISTRATION_FAILED",
    ResilienceErrorKind.METRICS_UNREGISTRATION: "ERR_METRICS_UNREGISTRATION_FAILED",
}


class ResilienceError(UpstreamGuardError):
    """Failure produced by the resilience layer itself.

    A CIRCUIT_OPEN error means the call never reached the operation; every
    other kind wraps a failure of (or around) the operation.

    Attributes:
        kind: Why the error was raised
        label: Label of the protected call site
        retryable: Whether the retry policy may retry this failure
        status_code: Upstream status code, when known
        cause: The underlying exception, if any
        attempts: Number of attempts made before giving up
        state: Breaker state at the time of the error
        time_until_retry: Seconds until the breaker admits a trial call
    """

    def __init__(
        self,
        kind: ResilienceErrorKind,
        message: str,
        *,
        label: str | None = None,
        retryable: bool = False,
        status_code: int | None = None,
        cause: BaseException | None = None,
        attempts: int | None = None,
        state: str | None = None,
        time_until_retry: float | None = None,
    ) -> None:
        ctx = ErrorContext(source="resilience", label=label)
        ctx.details["code"] = kind.code
        if state is not None:
            ctx.details["state"] = state
        if attempts is not None:
            ctx.details["attempts"] = attempts
        super().__init__(message, ctx)

        self.kind = kind
        self.label = label
        self.retryable = retryable
        self.status_code = status_code
        self.cause = cause
        self.attempts = attempts
        self.state = state
        self.time_until_retry = time_until_retry
        if cause is not None:
            self.__cause__ = cause

    @property
    def code(self) -> str:
        """Stable error code (e.g. 'ERR_CIRCUIT_BREAKER_OPEN')."""
        return self.kind.code

    @property
    def is_circuit_open(self) -> bool:
        """True when the breaker refused the call."""
        return self.kind is ResilienceErrorKind.CIRCUIT_OPEN

    @property
    def is_timeout(self) -> bool:
        """True when an attempt exceeded its deadline."""
        return self.kind is ResilienceErrorKind.TIMEOUT


class TransportError(UpstreamGuardError):
    """Error reaching the upstream service.

    Raised when:
    - Network connection failure
    - DNS resolution failure
    - Transport-level timeout

    Attributes:
        code: Transport error code (e.g. 'ECONNRESET', 'ETIMEDOUT')
        url: Target URL, when known
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        url: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        ctx = ErrorContext(source="transport")
        if code:
            ctx.details["code"] = code
        if url:
            ctx.details["url"] = url
        super().__init__(message, ctx)
        self.code = code
        self.url = url
        self.__cause__ = cause


class UpstreamError(UpstreamGuardError):
    """Error response from the upstream service.

    Attributes:
        status_code: HTTP status code
        error_class: Standardized error classification
        retryable: Whether the status is in the default retryable status set
        raw_error: Parsed error body, if any
        retry_after: Suggested retry delay in seconds (from header)
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        error_class: ErrorClass,
        retryable: bool = False,
        raw_error: dict[str, Any] | None = None,
        retry_after: float | None = None,
        url: str | None = None,
    ) -> None:
        ctx = ErrorContext(source="upstream")
        ctx.details["status_code"] = status_code
        ctx.details["error_class"] = error_class.value
        if url:
            ctx.details["url"] = url
        super().__init__(message, ctx)

        self.status_code = status_code
        self.error_class = error_class
        self.retryable = retryable
        self.raw_error = raw_error or {}
        self.retry_after = retry_after
        self.url = url

    @classmethod
    def from_response(
        cls,
        status_code: int,
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        url: str | None = None,
    ) -> UpstreamError:
        """Create an UpstreamError from an HTTP response.

        Args:
            status_code: HTTP status code
            body: Response body (parsed JSON)
            headers: Response headers
            url: Request URL

        Returns:
            UpstreamError with appropriate classification
        """
        from upstream_guard.errors.classification import (
            DEFAULT_RETRYABLE_STATUS_CODES,
            classify_http_status,
            extract_error_message,
        )

        error_class = classify_http_status(status_code)
        message = extract_error_message(body) or f"HTTP {status_code}"

        retry_after = None
        if headers:
            retry_after_str = headers.get("retry-after") or headers.get("Retry-After")
            if retry_after_str:
                with contextlib.suppress(ValueError):
                    retry_after = float(retry_after_str)

        return cls(
            message=message,
            status_code=status_code,
            error_class=error_class,
            retryable=status_code in DEFAULT_RETRYABLE_STATUS_CODES,
            raw_error=body,
            retry_after=retry_after,
            url=url,
        )
