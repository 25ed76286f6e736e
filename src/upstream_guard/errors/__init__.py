"""错误体系：提供熔断、重试和上游调用的结构化错误类型。

Error hierarchy for upstream-guard.
"""

from upstream_guard.errors.base import (
    ErrorContext,
    ResilienceError,
    ResilienceErrorKind,
    TransportError,
    UpstreamError,
    UpstreamGuardError,
)
from upstream_guard.errors.classification import (
    DEFAULT_RETRYABLE_STATUS_CODES,
    DEFAULT_RETRYABLE_TRANSPORT_CODES,
    ErrorClass,
    FailureClassification,
    classify_exception,
    classify_http_status,
    is_retryable,
)

__all__ = [
    "DEFAULT_RETRYABLE_STATUS_CODES",
    "DEFAULT_RETRYABLE_TRANSPORT_CODES",
    # Classification
    "ErrorClass",
    "ErrorContext",
    "FailureClassification",
    # Errors
    "ResilienceError",
    "ResilienceErrorKind",
    "TransportError",
    "UpstreamError",
    "UpstreamGuardError",
    "classify_exception",
    "classify_http_status",
    "is_retryable",
]
