"""
Retry policy with exponential backoff and additive jitter.

The policy is a pure decision engine: given the 0-based attempt number and
the failure of that attempt it answers "retry after D seconds" or "give up".
It performs no I/O and holds no mutable state; the attempt loop itself lives
in the resilient call wrapper.
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass, field
from typing import Any, Protocol

from upstream_guard.errors import (
    DEFAULT_RETRYABLE_STATUS_CODES,
    DEFAULT_RETRYABLE_TRANSPORT_CODES,
    FailureClassification,
    classify_exception,
)
from upstream_guard.resilience.options import RetryOptions


class RandomSource(Protocol):
    """Source of jitter; `random.Random` satisfies it."""

    def uniform(self, a: float, b: float) -> float: ...


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry policy.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = single attempt)
        base_delay_ms: Delay before the first retry in milliseconds
        max_delay_ms: Cap on the exponential part of the delay
        exponential_base: Growth factor applied per attempt
        jitter_ms: Upper bound of the uniform jitter added to every delay
        retryable_status_codes: Upstream status codes treated as transient
        retryable_transport_codes: Transport error codes treated as transient
        retry_on_timeout: Whether attempts that timed out are retried
    """

    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    exponential_base: float = 2.0
    jitter_ms: float = 100
    retryable_status_codes: frozenset[int] = field(
        default=DEFAULT_RETRYABLE_STATUS_CODES
    )
    retryable_transport_codes: frozenset[str] = field(
        default=DEFAULT_RETRYABLE_TRANSPORT_CODES
    )
    retry_on_timeout: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError(
                f"base_delay_ms ({self.base_delay_ms}) must not exceed "
                f"max_delay_ms ({self.max_delay_ms})"
            )
        if self.jitter_ms < 0:
            raise ValueError(f"jitter_ms must be >= 0, got {self.jitter_ms}")
        if self.exponential_base < 1:
            raise ValueError(
                f"exponential_base must be >= 1, got {self.exponential_base}"
            )

    @classmethod
    def from_options(cls, options: dict[str, Any] | None) -> RetryConfig:
        """Create config from a camelCase option dictionary.

        Args:
            options: e.g. ``{"maxRetries": 3, "baseDelayMs": 10}``

        Returns:
            RetryConfig instance; unset options keep their defaults

        Raises:
            pydantic.ValidationError: On unknown or ill-typed options
            ValueError: If the resulting delays are inconsistent
        """
        if not options:
            return cls()
        return cls(**RetryOptions.model_validate(options).to_config_kwargs())

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("UPSTREAM_GUARD_RETRY_MAX_RETRIES", "3")),
            base_delay_ms=float(os.getenv("UPSTREAM_GUARD_RETRY_BASE_DELAY_MS", "1000")),
            max_delay_ms=float(os.getenv("UPSTREAM_GUARD_RETRY_MAX_DELAY_MS", "30000")),
            exponential_base=float(
                os.getenv("UPSTREAM_GUARD_RETRY_EXPONENTIAL_BASE", "2")
            ),
            jitter_ms=float(os.getenv("UPSTREAM_GUARD_RETRY_JITTER_MS", "100")),
        )

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Create a config that disables retries."""
        return cls(max_retries=0)

    @property
    def max_attempts(self) -> int:
        """Total number of attempts, including the first one."""
        return self.max_retries + 1


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of consulting the policy after a failed attempt.

    Attributes:
        retry: Whether another attempt should be made
        delay: Seconds to wait before the next attempt (0 when giving up)
        reason: Short explanation, used in logs
        exhausted: True when a retryable failure ran out of retry budget
        classification: How the failure was classified
    """

    retry: bool
    delay: float = 0.0
    reason: str = ""
    exhausted: bool = False
    classification: FailureClassification | None = None


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Jitter is added on top of the capped exponential delay rather than
    substituted for it, so the delay for attempt ``k`` always lies in
    ``[min(max, base * exp**k), min(max, base * exp**k) + jitter]``.

    Example:
        >>> policy = RetryPolicy(RetryConfig(max_retries=3, base_delay_ms=10))
        >>> decision = policy.decide(0, UpstreamError(...))
        >>> if decision.retry:
        ...     await asyncio.sleep(decision.delay)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        rng: RandomSource | None = None,
    ) -> None:
        """Initialize retry policy.

        Args:
            config: Retry configuration
            rng: Jitter source; a fresh `random.Random` by default
        """
        self._config = config or RetryConfig()
        self._rng: RandomSource = rng or random.Random()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a retry attempt.

        Args:
            attempt: Attempt number that just failed (0-based)

        Returns:
            Delay in seconds
        """
        cfg = self._config
        try:
            exponential_ms = cfg.base_delay_ms * (cfg.exponential_base ** attempt)
        except OverflowError:
            exponential_ms = cfg.max_delay_ms
        delay_ms = min(cfg.max_delay_ms, exponential_ms)

        if cfg.jitter_ms > 0:
            jitter = self._rng.uniform(0, cfg.jitter_ms)
            # Clamp in case an injected source misbehaves
            delay_ms += min(max(jitter, 0.0), cfg.jitter_ms)

        return delay_ms / 1000.0

    def classify(self, error: BaseException) -> FailureClassification:
        """Classify a failure."""
        return classify_exception(error)

    def is_retryable(self, error: BaseException) -> bool:
        """Check whether a failure is transient under this policy.

        Args:
            error: The exception raised by the attempt

        Returns:
            True if the failure class is configured as retryable
        """
        return self._is_retryable(self.classify(error))

    def _is_retryable(self, classification: FailureClassification) -> bool:
        cfg = self._config

        # Deadline failures without an upstream status follow retry_on_timeout only
        if classification.is_timeout and classification.status_code is None:
            return cfg.retry_on_timeout

        if (
            classification.status_code is not None
            and classification.status_code in cfg.retryable_status_codes
        ):
            return True

        if (
            classification.transport_code is not None
            and classification.transport_code in cfg.retryable_transport_codes
        ):
            return True

        return bool(classification.explicit_retryable)

    def decide(self, attempt: int, error: BaseException) -> RetryDecision:
        """Decide what to do after a failed attempt.

        Args:
            attempt: Attempt number that just failed (0-based)
            error: The exception raised by that attempt

        Returns:
            RetryDecision
        """
        classification = self.classify(error)

        if not self._is_retryable(classification):
            return RetryDecision(
                retry=False,
                reason=f"non-retryable {classification.error_class.value} failure",
                classification=classification,
            )

        if attempt >= self._config.max_retries:
            return RetryDecision(
                retry=False,
                reason=f"retry budget of {self._config.max_retries} exhausted",
                exhausted=True,
                classification=classification,
            )

        return RetryDecision(
            retry=True,
            delay=self.calculate_delay(attempt),
            reason=f"retryable {classification.error_class.value} failure",
            classification=classification,
        )

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_retries={self._config.max_retries}, "
            f"base_delay_ms={self._config.base_delay_ms})"
        )
