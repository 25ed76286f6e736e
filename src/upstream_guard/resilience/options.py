"""
Option models for resilience configuration.

These Pydantic models validate the camelCase option dictionaries that
tool handlers pass in (e.g. ``{"maxRetries": 3, "baseDelayMs": 100}``)
before they are turned into the immutable config dataclasses.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RetryOptions(BaseModel):
    """Retry policy options."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    max_retries: int | None = Field(
        default=None, ge=0, alias="maxRetries", description="Maximum retry attempts"
    )
    base_delay_ms: float | None = Field(
        default=None, ge=0, alias="baseDelayMs", description="Delay before the first retry"
    )
    max_delay_ms: float | None = Field(
        default=None, ge=0, alias="maxDelayMs", description="Cap on the exponential delay"
    )
    exponential_base: float | None = Field(
        default=None, ge=1, alias="exponentialBase", description="Growth factor per attempt"
    )
    jitter_ms: float | None = Field(
        default=None, ge=0, alias="jitterMs", description="Upper bound of added random jitter"
    )
    retryable_status_codes: list[int] | None = Field(
        default=None,
        alias="retryableStatusCodes",
        description="Upstream status codes treated as transient",
    )
    retryable_transport_codes: list[str] | None = Field(
        default=None,
        alias="retryableErrors",
        description="Transport error codes treated as transient",
    )
    retry_on_timeout: bool | None = Field(
        default=None, alias="retryOnTimeout", description="Retry attempts that timed out"
    )

    def to_config_kwargs(self) -> dict[str, Any]:
        """Return set options as RetryConfig keyword arguments."""
        kwargs = self.model_dump(exclude_none=True)
        if "retryable_status_codes" in kwargs:
            kwargs["retryable_status_codes"] = frozenset(kwargs["retryable_status_codes"])
        if "retryable_transport_codes" in kwargs:
            kwargs["retryable_transport_codes"] = frozenset(
                code.upper() for code in kwargs["retryable_transport_codes"]
            )
        return kwargs


class BreakerOptions(BaseModel):
    """Circuit breaker options."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    failure_threshold: int | None = Field(
        default=None, ge=1, alias="failureThreshold", description="Failures before opening"
    )
    success_threshold: int | None = Field(
        default=None, ge=1, alias="successThreshold", description="Trial successes before closing"
    )
    timeout_ms: float | None = Field(
        default=None, gt=0, alias="timeout", description="Per-attempt timeout in ms"
    )
    reset_timeout_ms: float | None = Field(
        default=None, ge=0, alias="resetTimeoutMs", description="Minimum time spent open"
    )
    half_open_max_calls: int | None = Field(
        default=None, ge=1, alias="halfOpenMaxCalls", description="Concurrent trial calls"
    )

    def to_config_kwargs(self) -> dict[str, Any]:
        """Return set options as CircuitBreakerConfig keyword arguments."""
        return self.model_dump(exclude_none=True)
