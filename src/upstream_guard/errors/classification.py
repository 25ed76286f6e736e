"""错误分类模块：将状态码、传输错误和异常映射到标准错误类别。

Failure classification for upstream calls.

Maps HTTP status codes, transport error codes and arbitrary exceptions
(including httpx exceptions) onto a small set of standard error classes.
The retry policy decides retryability from this classification only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from upstream_guard.errors.base import (
    ResilienceError,
    ResilienceErrorKind,
    TransportError,
    UpstreamError,
)


class ErrorClass(str, Enum):
    """Standard error classification."""

    INVALID_REQUEST = "invalid_request"
    """Malformed request body, invalid parameters, or unsupported operation."""

    AUTHENTICATION = "authentication"
    """Missing/invalid credentials (API key/token)."""

    PERMISSION_DENIED = "permission_denied"
    """Caller is authenticated but not permitted to access the resource."""

    NOT_FOUND = "not_found"
    """Requested resource not found."""

    RATE_LIMITED = "rate_limited"
    """Throttled by the upstream; typically retryable with backoff."""

    REQUEST_TOO_LARGE = "request_too_large"
    """Payload too large."""

    TIMEOUT = "timeout"
    """Request timed out or deadline exceeded."""

    CONFLICT = "conflict"
    """Request conflict."""

    CANCELLED = "cancelled"
    """Request was cancelled by client or upstream."""

    SERVER_ERROR = "server_error"
    """Server-side failure (5xx)."""

    OVERLOADED = "overloaded"
    """Service overloaded / temporarily unavailable."""

    TRANSPORT = "transport"
    """Connection-level failure before a response was received."""

    OTHER = "other"
    """Unknown classification."""


# Status codes retried by default
DEFAULT_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 502, 503, 504})

# Transport error codes retried by default
DEFAULT_RETRYABLE_TRANSPORT_CODES: frozenset[str] = frozenset(
    {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN"}
)

# Every transport code we know how to recognise in an error message
KNOWN_TRANSPORT_CODES: tuple[str, ...] = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EAI_AGAIN",
    "ECONNREFUSED",
    "EPIPE",
)

_RETRYABLE_CLASSES: set[ErrorClass] = {
    ErrorClass.RATE_LIMITED,
    ErrorClass.TIMEOUT,
    ErrorClass.CONFLICT,
    ErrorClass.SERVER_ERROR,
    ErrorClass.OVERLOADED,
}

_DEFAULT_STATUS_MAPPING: dict[int, ErrorClass] = {
    400: ErrorClass.INVALID_REQUEST,
    401: ErrorClass.AUTHENTICATION,
    403: ErrorClass.PERMISSION_DENIED,
    404: ErrorClass.NOT_FOUND,
    408: ErrorClass.TIMEOUT,
    409: ErrorClass.CONFLICT,
    413: ErrorClass.REQUEST_TOO_LARGE,
    422: ErrorClass.INVALID_REQUEST,
    429: ErrorClass.RATE_LIMITED,
    499: ErrorClass.CANCELLED,
    500: ErrorClass.SERVER_ERROR,
    502: ErrorClass.SERVER_ERROR,
    503: ErrorClass.OVERLOADED,
    504: ErrorClass.TIMEOUT,
}


@dataclass(frozen=True)
class FailureClassification:
    """How a failed attempt was classified.

    Attributes:
        error_class: Standard error class
        status_code: Upstream status code, if the failure carried one
        transport_code: Transport error code (e.g. 'ECONNRESET'), if any
        explicit_retryable: Retryability stated by the error itself, if any
    """

    error_class: ErrorClass
    status_code: int | None = None
    transport_code: str | None = None
    explicit_retryable: bool | None = None

    @property
    def is_timeout(self) -> bool:
        return self.error_class is ErrorClass.TIMEOUT


def classify_http_status(status_code: int) -> ErrorClass:
    """Classify an HTTP status code into a standard error class.

    Args:
        status_code: HTTP status code

    Returns:
        ErrorClass representing the error type
    """
    if status_code in _DEFAULT_STATUS_MAPPING:
        return _DEFAULT_STATUS_MAPPING[status_code]

    if 400 <= status_code < 500:
        return ErrorClass.INVALID_REQUEST
    if 500 <= status_code < 600:
        return ErrorClass.SERVER_ERROR

    return ErrorClass.OTHER


def is_retryable(error_class: ErrorClass) -> bool:
    """Check if an error class is transient by default.

    Args:
        error_class: The error class to check

    Returns:
        True if the error is typically retryable
    """
    return error_class in _RETRYABLE_CLASSES


def transport_code_from_message(message: str) -> str | None:
    """Find a known transport error code mentioned in a message."""
    upper = message.upper()
    for code in KNOWN_TRANSPORT_CODES:
        if code in upper:
            return code
    return None


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify any exception raised by an upstream operation.

    Args:
        error: The exception raised by the operation

    Returns:
        FailureClassification for the retry policy
    """
    if isinstance(error, ResilienceError):
        if error.kind is ResilienceErrorKind.TIMEOUT:
            return FailureClassification(
                ErrorClass.TIMEOUT,
                status_code=error.status_code,
                transport_code="ETIMEDOUT",
                explicit_retryable=error.retryable,
            )
        return FailureClassification(
            classify_http_status(error.status_code)
            if error.status_code
            else ErrorClass.OTHER,
            status_code=error.status_code,
            explicit_retryable=error.retryable,
        )

    if isinstance(error, UpstreamError):
        return FailureClassification(error.error_class, status_code=error.status_code)

    if isinstance(error, TransportError):
        code = error.code or transport_code_from_message(error.message)
        error_class = ErrorClass.TIMEOUT if code == "ETIMEDOUT" else ErrorClass.TRANSPORT
        return FailureClassification(error_class, transport_code=code)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return FailureClassification(classify_http_status(status), status_code=status)

    if isinstance(error, httpx.TimeoutException):
        return FailureClassification(ErrorClass.TIMEOUT, transport_code="ETIMEDOUT")

    if isinstance(error, httpx.ConnectError):
        code = transport_code_from_message(str(error)) or "ECONNREFUSED"
        return FailureClassification(ErrorClass.TRANSPORT, transport_code=code)

    if isinstance(error, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        code = transport_code_from_message(str(error)) or "ECONNRESET"
        return FailureClassification(ErrorClass.TRANSPORT, transport_code=code)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return FailureClassification(ErrorClass.TIMEOUT, transport_code="ETIMEDOUT")

    if isinstance(error, ConnectionResetError):
        return FailureClassification(ErrorClass.TRANSPORT, transport_code="ECONNRESET")

    if isinstance(error, ConnectionRefusedError):
        return FailureClassification(ErrorClass.TRANSPORT, transport_code="ECONNREFUSED")

    status = _status_attribute(error)
    code = _code_attribute(error) or transport_code_from_message(str(error))
    if status is not None:
        return FailureClassification(
            classify_http_status(status), status_code=status, transport_code=code
        )
    if code is not None:
        error_class = ErrorClass.TIMEOUT if code == "ETIMEDOUT" else ErrorClass.TRANSPORT
        return FailureClassification(error_class, transport_code=code)
    return FailureClassification(ErrorClass.OTHER)


def _status_attribute(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _code_attribute(error: BaseException) -> str | None:
    value: Any = getattr(error, "code", None)
    if isinstance(value, str) and value.upper() in KNOWN_TRANSPORT_CODES:
        return value.upper()
    return None


def extract_error_message(body: dict[str, Any] | None) -> str | None:
    """Extract an error message from a response body.

    Supports `{"error": {"message": ...}}`, `{"error": "..."}`,
    `{"message": ...}` and `{"detail": ...}` envelopes.

    Args:
        body: Response body (parsed JSON)

    Returns:
        Error message if found, None otherwise
    """
    if not body:
        return None

    if "error" in body:
        error = body["error"]
        if isinstance(error, dict):
            msg = error.get("message")
            if isinstance(msg, str):
                return msg
        elif isinstance(error, str):
            return error

    if "message" in body:
        msg = body["message"]
        if isinstance(msg, str):
            return msg

    if "detail" in body:
        detail = body["detail"]
        if isinstance(detail, str):
            return detail
        if isinstance(detail, list) and detail:
            return str(detail[0])

    return None
