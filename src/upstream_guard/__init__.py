"""上游调用保护工具包：为分析工具提供重试退避与熔断的弹性调用封装。

upstream-guard: resilient calls to unreliable upstream services.

Analytical tool handlers hand the wrapper an async operation and a label;
the wrapper applies retry with exponential backoff and a per-label circuit
breaker, and returns the result or a classified failure.
"""
from __future__ import annotations

from upstream_guard.errors import (
    ResilienceError,
    ResilienceErrorKind,
    TransportError,
    UpstreamError,
    UpstreamGuardError,
)
from upstream_guard.resilience import (
    CallResult,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitMetrics,
    CircuitState,
    ResilientCallWrapper,
    RetryConfig,
    RetryPolicy,
    WrapperRegistry,
    create_resilient_wrapper,
)

__version__ = "0.1.0"

__all__ = [
    "CallResult",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitMetrics",
    "CircuitState",
    # Errors
    "ResilienceError",
    "ResilienceErrorKind",
    # Wrapper
    "ResilientCallWrapper",
    # Retry
    "RetryConfig",
    "RetryPolicy",
    "TransportError",
    "UpstreamError",
    "UpstreamGuardError",
    "WrapperRegistry",
    "__version__",
    "create_resilient_wrapper",
]
