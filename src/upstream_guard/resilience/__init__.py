"""
Resilience layer - Retry with backoff and circuit breaking for upstream calls.

This module provides:
- RetryPolicy: Exponential backoff with additive jitter
- CircuitBreaker: Closed/Open/Half-Open state machine
- ResilientCallWrapper: One logical call = one breaker outcome, retries inside
- WrapperRegistry: One wrapper per upstream dependency label
"""

from upstream_guard.resilience.circuit_breaker import (
    Admission,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitMetrics,
    CircuitState,
    run_with_timeout,
)
from upstream_guard.resilience.options import BreakerOptions, RetryOptions
from upstream_guard.resilience.registry import WrapperRegistry
from upstream_guard.resilience.retry import (
    RandomSource,
    RetryConfig,
    RetryDecision,
    RetryPolicy,
)
from upstream_guard.resilience.wrapper import (
    CallResult,
    ResilientCallWrapper,
    create_resilient_wrapper,
)

__all__ = [
    # Circuit breaker
    "Admission",
    # Options
    "BreakerOptions",
    # Wrapper
    "CallResult",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitMetrics",
    "CircuitState",
    # Retry
    "RandomSource",
    "ResilientCallWrapper",
    "RetryConfig",
    "RetryDecision",
    "RetryOptions",
    "RetryPolicy",
    # Registry
    "WrapperRegistry",
    "create_resilient_wrapper",
    "run_with_timeout",
]
