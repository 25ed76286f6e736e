"""弹性调用封装：组合重试与熔断，保护对不可靠上游服务的调用。

Resilient call wrapper combining retry with backoff and a circuit breaker.

For every logical call the wrapper consults the breaker once, runs the
retry loop around the operation, and reports exactly one outcome back to
the breaker, no matter how many attempts the retry loop made.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from upstream_guard.errors import ResilienceError, ResilienceErrorKind
from upstream_guard.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitMetrics,
    CircuitState,
    run_with_timeout,
)
from upstream_guard.resilience.retry import RandomSource, RetryConfig, RetryPolicy
from upstream_guard.telemetry.logger import get_logger, log_context

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from upstream_guard.resilience.circuit_breaker import Admission
    from upstream_guard.telemetry.metrics import BreakerMetricsCollector

T = TypeVar("T")

logger = get_logger("upstream_guard.resilience.wrapper")

_NOTE_ATTR = "_upstream_guard_note"


def _allow_metrics_failure() -> bool:
    return os.getenv("UPSTREAM_GUARD_ALLOW_METRICS_FAILURE", "").lower() == "true"


@dataclass
class CallResult(Generic[T]):
    """Outcome of one logical call.

    Attributes:
        success: Whether the operation eventually succeeded
        value: The result value (if success)
        error: The final error (if failed)
        attempts: Number of operation invocations made
        total_delay_ms: Total backoff delay in milliseconds
    """

    success: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay_ms: float = 0.0


class ResilientCallWrapper:
    """Retry plus circuit breaker around calls to one upstream dependency.

    Each wrapper owns exactly one breaker, scoped to its label.

    Example:
        >>> wrapper = ResilientCallWrapper(
        ...     RetryConfig(max_retries=3, base_delay_ms=10),
        ...     CircuitBreakerConfig(failure_threshold=3, reset_timeout_ms=20),
        ...     label="exa-search",
        ... )
        >>> try:
        ...     result = await wrapper.execute(lambda: client.search(query), "search")
        ... except ResilienceError as e:
        ...     if e.is_circuit_open:
        ...         print("Upstream is being protected, try later")
    """

    def __init__(
        self,
        retry: RetryConfig | None = None,
        breaker: CircuitBreakerConfig | None = None,
        *,
        label: str = "upstream",
        metrics_collector: BreakerMetricsCollector | None = None,
        rng: RandomSource | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        wrap_errors: bool = False,
    ) -> None:
        """Initialize the wrapper.

        Args:
            retry: Retry configuration
            breaker: Circuit breaker configuration
            label: Name of the protected upstream dependency
            metrics_collector: Collector to register the breaker with
            rng: Jitter source for the retry policy
            clock: Monotonic clock for the breaker's reset timeout
            sleep: Coroutine used for backoff delays (``asyncio.sleep``)
            wrap_errors: Raise ResilienceError(RETRIES_EXHAUSTED) instead of
                the underlying error once retries have been spent

        Raises:
            ResilienceError: With kind METRICS_REGISTRATION if registering with
                the collector fails and UPSTREAM_GUARD_ALLOW_METRICS_FAILURE
                is not set to ``true``
        """
        self._label = label
        self._policy = RetryPolicy(retry, rng=rng)
        self._breaker = CircuitBreaker(breaker, label=label, clock=clock)
        self._sleep = sleep or asyncio.sleep
        self._wrap_errors = wrap_errors
        self._metrics_collector = metrics_collector

        if metrics_collector is not None:
            try:
                metrics_collector.register_breaker(label, self.get_metrics)
            except Exception as e:
                self._metrics_collector = None
                self._handle_metrics_failure(
                    ResilienceErrorKind.METRICS_REGISTRATION, "registration", e
                )

    def _handle_metrics_failure(
        self, kind: ResilienceErrorKind, action: str, error: Exception
    ) -> None:
        logger.error(
            f"Failed metrics {action} for circuit breaker: {self._label}",
            label=self._label,
            error=str(error),
        )
        if not _allow_metrics_failure():
            raise ResilienceError(
                kind,
                f"Metrics {action} failed for circuit breaker '{self._label}'. "
                "Set UPSTREAM_GUARD_ALLOW_METRICS_FAILURE=true to continue with "
                "degraded observability.",
                label=self._label,
                cause=error,
            )
        logger.warning(
            "Continuing with degraded observability",
            label=self._label,
        )

    @property
    def label(self) -> str:
        return self._label

    @property
    def state(self) -> CircuitState:
        """Current breaker state."""
        return self._breaker.state

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str | None = None,
    ) -> T:
        """Execute an operation with circuit breaking and retries.

        Args:
            operation: Async operation to execute; called once per attempt
            label: Human-readable name of the operation for logs and errors

        Returns:
            Operation result

        Raises:
            ResilienceError: CIRCUIT_OPEN if the breaker refused the call, or
                TIMEOUT if the final attempt exceeded the per-attempt timeout
            Exception: The operation's final error, annotated with
                ``label``, ``attempts`` and ``retry_count``
        """
        result = await self._run(operation, label or self._label)
        if result.success:
            return result.value  # type: ignore[return-value]
        raise result.error  # type: ignore[misc]

    async def execute_with_result(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str | None = None,
    ) -> CallResult[T]:
        """Like :meth:`execute` but returns operation failures instead of raising.

        Breaker rejections still raise ``ResilienceError``.
        """
        return await self._run(operation, label or self._label)

    async def _run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
    ) -> CallResult[T]:
        with log_context(label=self._label, operation=name):
            admission = self._breaker.acquire()
            try:
                return await self._attempt_loop(operation, name, admission)
            except BaseException:
                # Abandoned (e.g. cancelled while in backoff): no outcome is reported
                self._breaker.release(admission)
                raise

    async def _attempt_loop(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        admission: Admission,
    ) -> CallResult[T]:
        timeout = self._breaker.config.timeout_seconds
        max_attempts = self._policy.config.max_attempts
        total_delay = 0.0
        attempt = 0

        while True:
            logger.debug(f"Executing {name}, attempt {attempt + 1}/{max_attempts}")
            try:
                value = await run_with_timeout(operation, timeout, label=self._label)
            except Exception as e:
                decision = self._policy.decide(attempt, e)
                attempt += 1
                logger.warning(
                    f"{name} failed on attempt {attempt}",
                    error=str(e),
                    attempt=attempt,
                    max_retries=self._policy.config.max_retries,
                )
                if not decision.retry:
                    logger.info(f"{name} giving up: {decision.reason}", attempts=attempt)
                    self._breaker.record_failure(admission, e)
                    error = self._annotate(e, name, attempt)
                    if self._wrap_errors and decision.exhausted:
                        error = ResilienceError(
                            ResilienceErrorKind.RETRIES_EXHAUSTED,
                            f"{name} failed after {attempt - 1} retries: {e}",
                            label=self._label,
                            status_code=decision.classification.status_code
                            if decision.classification
                            else None,
                            cause=e,
                            attempts=attempt,
                        )
                    return CallResult(
                        success=False,
                        error=error,
                        attempts=attempt,
                        total_delay_ms=total_delay * 1000,
                    )

                if self._metrics_collector is not None:
                    self._metrics_collector.record_retry(self._label)
                logger.debug(
                    f"Waiting {decision.delay * 1000:.1f}ms before retry {attempt + 1}"
                )
                total_delay += decision.delay
                await self._sleep(decision.delay)
                continue

            attempt += 1
            if attempt > 1:
                logger.info(
                    f"{name} succeeded after {attempt} attempts",
                    total_delay_ms=total_delay * 1000,
                )
            self._breaker.record_success(admission)
            return CallResult(
                success=True,
                value=value,
                attempts=attempt,
                total_delay_ms=total_delay * 1000,
            )

    def _annotate(self, error: BaseException, name: str, attempts: int) -> BaseException:
        retry_count = max(0, attempts - 1)
        if isinstance(error, ResilienceError):
            if error.label is None:
                error.label = self._label
                error.context.label = self._label
            error.attempts = attempts
        else:
            error.label = self._label  # type: ignore[attr-defined]
            error.attempts = attempts  # type: ignore[attr-defined]
        error.retry_count = retry_count  # type: ignore[attr-defined]

        # An operation may re-raise the same instance on later calls; keep one note
        notes = getattr(error, "__notes__", [])
        previous = getattr(error, _NOTE_ATTR, None)
        if previous in notes:
            notes.remove(previous)
        note = (
            f"{name} failed after {attempts} attempt(s) "
            f"({retry_count} retries) [label={self._label}]"
        )
        error.add_note(note)
        setattr(error, _NOTE_ATTR, note)
        return error

    def get_metrics(self) -> CircuitMetrics:
        """Get a snapshot of the breaker's state and counters."""
        return self._breaker.get_metrics()

    def reset(self) -> None:
        """Force the breaker to CLOSED and zero its counters."""
        self._breaker.reset()

    def close(self) -> None:
        """Unregister from the metrics collector.

        Raises:
            ResilienceError: With kind METRICS_UNREGISTRATION if the collector
                rejects the call and UPSTREAM_GUARD_ALLOW_METRICS_FAILURE is
                not set to ``true``
        """
        if self._metrics_collector is None:
            return
        collector, self._metrics_collector = self._metrics_collector, None
        try:
            collector.unregister_breaker(self._label)
        except Exception as e:
            self._handle_metrics_failure(
                ResilienceErrorKind.METRICS_UNREGISTRATION, "unregistration", e
            )

    def __enter__(self) -> ResilientCallWrapper:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ResilientCallWrapper(label={self._label!r}, breaker={self._breaker!r})"


def create_resilient_wrapper(
    label: str,
    retry_options: dict[str, Any] | None = None,
    breaker_options: dict[str, Any] | None = None,
    metrics_collector: BreakerMetricsCollector | None = None,
) -> ResilientCallWrapper:
    """Create a wrapper from camelCase option dictionaries.

    Args:
        label: Name of the protected upstream dependency
        retry_options: e.g. ``{"maxRetries": 3, "jitterMs": 5}``
        breaker_options: e.g. ``{"failureThreshold": 3, "resetTimeoutMs": 20}``
        metrics_collector: Optional collector to register with

    Returns:
        ResilientCallWrapper
    """
    return ResilientCallWrapper(
        RetryConfig.from_options(retry_options),
        CircuitBreakerConfig.from_options(breaker_options),
        label=label,
        metrics_collector=metrics_collector,
    )
