"""
Circuit breaker for fault isolation.

Implements the circuit breaker pattern with three states:
- Closed: Normal operation, calls pass through
- Open: Circuit tripped, calls fail fast
- Half-Open: A bounded number of trial calls test whether the upstream recovered

All reads and writes of breaker state go through one lock. The lock is only
held for short, non-blocking bookkeeping and never across an ``await``, so
it is safe to share one breaker between any number of concurrent calls.
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from upstream_guard.errors import ResilienceError, ResilienceErrorKind
from upstream_guard.resilience.options import BreakerOptions
from upstream_guard.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = get_logger("upstream_guard.resilience.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures that trip the circuit
        success_threshold: Trial successes in half-open needed to close
        timeout_ms: Per-attempt timeout in milliseconds (None disables it)
        reset_timeout_ms: Minimum time spent open before a trial is admitted
        half_open_max_calls: Trial calls allowed in flight at once
    """

    failure_threshold: int = 5
    success_threshold: int = 3
    timeout_ms: float | None = 60000
    reset_timeout_ms: float = 30000
    half_open_max_calls: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(
                f"failure_threshold must be >= 1, got {self.failure_threshold}"
            )
        if self.success_threshold < 1:
            raise ValueError(
                f"success_threshold must be >= 1, got {self.success_threshold}"
            )
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be > 0, got {self.timeout_ms}")
        if self.reset_timeout_ms < 0:
            raise ValueError(
                f"reset_timeout_ms must be >= 0, got {self.reset_timeout_ms}"
            )
        if self.half_open_max_calls < 1:
            raise ValueError(
                f"half_open_max_calls must be >= 1, got {self.half_open_max_calls}"
            )

    @property
    def timeout_seconds(self) -> float | None:
        return self.timeout_ms / 1000.0 if self.timeout_ms is not None else None

    @property
    def reset_timeout_seconds(self) -> float:
        return self.reset_timeout_ms / 1000.0

    @classmethod
    def from_options(cls, options: dict[str, Any] | None) -> CircuitBreakerConfig:
        """Create config from a camelCase option dictionary.

        Args:
            options: e.g. ``{"failureThreshold": 3, "resetTimeoutMs": 20}``

        Returns:
            CircuitBreakerConfig instance; unset options keep their defaults
        """
        if not options:
            return cls()
        return cls(**BreakerOptions.model_validate(options).to_config_kwargs())

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        """Create configuration from environment variables."""
        return cls(
            failure_threshold=int(
                os.getenv("UPSTREAM_GUARD_BREAKER_FAILURE_THRESHOLD", "5")
            ),
            success_threshold=int(
                os.getenv("UPSTREAM_GUARD_BREAKER_SUCCESS_THRESHOLD", "3")
            ),
            timeout_ms=float(os.getenv("UPSTREAM_GUARD_BREAKER_TIMEOUT_MS", "60000")),
            reset_timeout_ms=float(
                os.getenv("UPSTREAM_GUARD_BREAKER_RESET_TIMEOUT_MS", "30000")
            ),
        )


@dataclass(frozen=True)
class Admission:
    """Result of the breaker's admission check.

    Attributes:
        admitted: Whether the call may proceed to the operation
        trial: Whether the call was admitted as a half-open trial
        state: Breaker state after the check
        generation: State generation the admission belongs to
    """

    admitted: bool
    trial: bool
    state: CircuitState
    generation: int


@dataclass(frozen=True)
class CircuitMetrics:
    """Point-in-time copy of breaker state and counters.

    ``total_calls`` counts calls admitted past the breaker gate; calls
    refused by the breaker are counted in ``rejected_calls`` only.
    """

    label: str
    state: CircuitState
    total_calls: int = 0
    failure_count: int = 0
    success_count: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_success_time: datetime | None = None
    last_failure_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data["state"] = self.state.value
        for key in ("last_success_time", "last_failure_time"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class CircuitBreaker:
    """Circuit breaker for one protected call site.

    The breaker only keeps the books; it never runs operations on its own
    except through :meth:`call`. Callers take an :class:`Admission` with
    :meth:`acquire`, run the work, then report exactly one outcome with
    :meth:`record_success` or :meth:`record_failure` (or give the trial slot
    back with :meth:`release` if the work was abandoned).

    Every transition bumps a generation number. Outcomes reported for an
    admission from an older generation update timestamps but never drive a
    transition, so a late result cannot undo a newer verdict.

    Example:
        >>> breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3), "search")
        >>> admission = breaker.acquire()  # raises ResilienceError when open
        >>> try:
        ...     result = await fetch()
        ... except Exception as exc:
        ...     breaker.record_failure(admission, exc)
        ...     raise
        ... breaker.record_success(admission)
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        label: str = "default",
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            config: Circuit breaker configuration
            label: Name of the protected call site
            clock: Monotonic clock in seconds (``time.monotonic`` by default)
        """
        self._config = config or CircuitBreakerConfig()
        self._label = label
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._generation = 0
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._trials_in_flight = 0

        self._total_calls = 0
        self._rejected_calls = 0
        self._state_changes = 0
        self._last_success_time: datetime | None = None
        self._last_failure_time: datetime | None = None

    @property
    def label(self) -> str:
        return self._label

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state. Caller holds the lock."""
        old_state = self._state
        self._state = new_state
        self._generation += 1
        self._state_changes += 1
        self._failure_count = 0
        self._success_count = 0
        self._trials_in_flight = 0

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._opened_at = None

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker {self._label} transitioning to {new_state.name}",
            label=self._label,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def _reset_elapsed(self, now: float) -> bool:
        if self._opened_at is None:
            return True
        return now - self._opened_at >= self._config.reset_timeout_seconds

    def _time_until_retry(self, now: float) -> float | None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        remaining = self._config.reset_timeout_seconds - (now - self._opened_at)
        return max(0.0, remaining)

    def try_acquire(self) -> Admission:
        """Run the admission check without raising.

        Returns:
            Admission; ``admitted`` is False when the call must be rejected
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                if not self._reset_elapsed(self._clock()):
                    self._rejected_calls += 1
                    return Admission(False, False, self._state, self._generation)
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trials_in_flight >= self._config.half_open_max_calls:
                    self._rejected_calls += 1
                    return Admission(False, False, self._state, self._generation)
                self._trials_in_flight += 1
                self._total_calls += 1
                return Admission(True, True, self._state, self._generation)

            self._total_calls += 1
            return Admission(True, False, self._state, self._generation)

    def acquire(self) -> Admission:
        """Run the admission check.

        Returns:
            Admission for an admitted call

        Raises:
            ResilienceError: With kind CIRCUIT_OPEN when the call is rejected
        """
        admission = self.try_acquire()
        if admission.admitted:
            return admission

        wait = self.time_until_retry()
        logger.debug(
            f"Circuit breaker {self._label} rejected call",
            label=self._label,
            state=admission.state.value,
            time_until_retry=wait,
        )
        if admission.state == CircuitState.OPEN:
            message = f"Circuit breaker {self._label} is OPEN"
            if wait is not None:
                message += f". Next attempt in {wait:.3f}s"
        else:
            message = f"Circuit breaker {self._label} is HALF_OPEN and at trial capacity"
        raise ResilienceError(
            ResilienceErrorKind.CIRCUIT_OPEN,
            message,
            label=self._label,
            state=admission.state.value,
            time_until_retry=wait,
        )

    def _release_trial(self, admission: Admission) -> None:
        if admission.trial and admission.generation == self._generation:
            self._trials_in_flight = max(0, self._trials_in_flight - 1)

    def record_success(self, admission: Admission) -> None:
        """Report that an admitted call succeeded."""
        with self._lock:
            self._last_success_time = datetime.now(timezone.utc)
            self._release_trial(admission)
            if admission.generation != self._generation:
                return

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                logger.debug(
                    f"Circuit breaker {self._label} success in HALF_OPEN: "
                    f"{self._success_count}/{self._config.success_threshold}",
                    label=self._label,
                )
                if self._success_count >= self._config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(
        self, admission: Admission, error: BaseException | None = None
    ) -> None:
        """Report that an admitted call failed."""
        with self._lock:
            self._last_failure_time = datetime.now(timezone.utc)
            self._release_trial(admission)
            if admission.generation != self._generation:
                return

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                logger.debug(
                    f"Circuit breaker {self._label} failure "
                    f"{self._failure_count}/{self._config.failure_threshold}",
                    label=self._label,
                    error=str(error) if error is not None else None,
                )
                if self._failure_count >= self._config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

    def release(self, admission: Admission) -> None:
        """Give back an admission without reporting an outcome.

        Used when the caller abandons the call (e.g. cancellation).
        """
        with self._lock:
            self._release_trial(admission)

    def time_until_retry(self) -> float | None:
        """Get time until the circuit admits a trial call.

        Returns:
            Seconds until retry, or None if not open
        """
        with self._lock:
            return self._time_until_retry(self._clock())

    def reset(self) -> None:
        """Force the breaker to CLOSED and zero all counters.

        Not subject to the reset timeout. Calls still in flight from before
        the reset can no longer drive a transition.
        """
        with self._lock:
            self._state = CircuitState.CLOSED
            self._generation += 1
            self._failure_count = 0
            self._success_count = 0
            self._trials_in_flight = 0
            self._opened_at = None
            self._total_calls = 0
            self._rejected_calls = 0
            self._state_changes = 0
            self._last_success_time = None
            self._last_failure_time = None
        logger.info(
            f"Circuit breaker {self._label} manually reset to CLOSED",
            label=self._label,
        )

    def get_metrics(self) -> CircuitMetrics:
        """Get a snapshot of breaker state and counters."""
        with self._lock:
            return CircuitMetrics(
                label=self._label,
                state=self._state,
                total_calls=self._total_calls,
                failure_count=self._failure_count,
                success_count=self._success_count,
                rejected_calls=self._rejected_calls,
                state_changes=self._state_changes,
                last_success_time=self._last_success_time,
                last_failure_time=self._last_failure_time,
            )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one attempt of an operation through the breaker.

        Args:
            operation: Async operation to execute

        Returns:
            Operation result

        Raises:
            ResilienceError: If the circuit rejects the call or the attempt times out
        """
        admission = self.acquire()
        try:
            result = await run_with_timeout(
                operation, self._config.timeout_seconds, label=self._label
            )
        except asyncio.CancelledError:
            self.release(admission)
            raise
        except Exception as exc:
            self.record_failure(admission, exc)
            raise
        self.record_success(admission)
        return result

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(label={self._label!r}, state={self._state.value}, "
            f"failures={self._failure_count}/{self._config.failure_threshold})"
        )


async def run_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float | None,
    *,
    label: str | None = None,
) -> T:
    """Race an operation against a deadline.

    The operation is cancelled if the deadline wins, so a late completion
    has no effect on the caller. A ``TimeoutError`` raised by the operation
    itself before the deadline propagates unchanged.

    Args:
        operation: Async operation
        timeout: Deadline in seconds (None waits indefinitely)
        label: Call-site label for the timeout error

    Returns:
        Operation result

    Raises:
        ResilienceError: With kind TIMEOUT when the deadline expires first
    """
    if timeout is None:
        return await operation()
    try:
        async with asyncio.timeout(timeout) as deadline:
            return await operation()
    except TimeoutError as exc:
        if not deadline.expired():
            raise
        raise ResilienceError(
            ResilienceErrorKind.TIMEOUT,
            f"Operation timed out after {timeout * 1000:.0f}ms",
            label=label,
            retryable=True,
            cause=exc,
        ) from exc
