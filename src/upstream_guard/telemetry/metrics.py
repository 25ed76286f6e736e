"""
Metrics collection for upstream-guard.

Aggregates circuit breaker snapshots and retry counts per protected label
and renders them in the Prometheus text format.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import TYPE_CHECKING

from upstream_guard.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from upstream_guard.resilience.circuit_breaker import CircuitMetrics

logger = get_logger("upstream_guard.telemetry.metrics")

_STATE_VALUES: dict[str, int] = {
    "closed": 0,
    "half_open": 1,
    "open": 2,
}


class BreakerMetricsCollector:
    """Collects breaker metrics from every registered call site.

    Thread-safe. Breakers register a zero-argument getter returning a
    ``CircuitMetrics`` snapshot; the collector only ever reads snapshots.

    Example:
        >>> collector = BreakerMetricsCollector()
        >>> collector.register_breaker("exa-search", wrapper.get_metrics)
        >>> print(collector.to_prometheus())
    """

    def __init__(self, namespace: str = "upstream_guard") -> None:
        """Initialize collector.

        Args:
            namespace: Prefix for exported metric names
        """
        self._lock = threading.Lock()
        self._namespace = namespace
        self._breakers: dict[str, Callable[[], CircuitMetrics]] = {}
        self._retry_count: dict[str, int] = defaultdict(int)

    def register_breaker(
        self, label: str, get_metrics: Callable[[], CircuitMetrics]
    ) -> None:
        """Register a breaker's snapshot getter under its label.

        Raises:
            ValueError: If the label is already registered
        """
        with self._lock:
            if label in self._breakers:
                raise ValueError(f"Circuit breaker already registered: {label}")
            self._breakers[label] = get_metrics
        logger.debug(f"Registered circuit breaker for metrics: {label}", label=label)

    def unregister_breaker(self, label: str) -> None:
        """Unregister a breaker.

        Raises:
            KeyError: If the label is not registered
        """
        with self._lock:
            if label not in self._breakers:
                raise KeyError(label)
            del self._breakers[label]
            self._retry_count.pop(label, None)
        logger.debug(f"Unregistered circuit breaker from metrics: {label}", label=label)

    def is_registered(self, label: str) -> bool:
        with self._lock:
            return label in self._breakers

    def record_retry(self, label: str) -> None:
        """Record one retry attempt for a label."""
        with self._lock:
            self._retry_count[label] += 1

    def get_retry_count(self, label: str) -> int:
        with self._lock:
            return self._retry_count.get(label, 0)

    def collect(self) -> dict[str, CircuitMetrics]:
        """Collect a snapshot from every registered breaker.

        A getter that raises is logged and skipped.
        """
        with self._lock:
            getters = dict(self._breakers)

        snapshots: dict[str, CircuitMetrics] = {}
        for label, get_metrics in getters.items():
            try:
                snapshots[label] = get_metrics()
            except Exception as e:
                logger.warning(
                    f"Failed to get metrics for circuit breaker: {label}",
                    label=label,
                    error=str(e),
                )
        return snapshots

    def reset(self) -> None:
        """Drop all registrations and retry counts."""
        with self._lock:
            self._breakers.clear()
            self._retry_count.clear()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        ns = self._namespace
        snapshots = self.collect()
        with self._lock:
            retries = dict(self._retry_count)

        lines: list[str] = []

        def _series(
            name: str, kind: str, help_text: str, values: dict[str, float | int]
        ) -> None:
            lines.append(f"# HELP {ns}_{name} {help_text}")
            lines.append(f"# TYPE {ns}_{name} {kind}")
            for label, value in sorted(values.items()):
                lines.append(f'{ns}_{name}{{name="{_escape(label)}"}} {value}')

        _series(
            "circuit_breaker_state",
            "gauge",
            "Circuit breaker state (0=CLOSED, 1=HALF_OPEN, 2=OPEN)",
            {label: _STATE_VALUES[m.state.value] for label, m in snapshots.items()},
        )
        _series(
            "circuit_breaker_total_calls_total",
            "counter",
            "Calls admitted through circuit breaker",
            {label: m.total_calls for label, m in snapshots.items()},
        )
        _series(
            "circuit_breaker_rejected_calls_total",
            "counter",
            "Rejected calls by circuit breaker",
            {label: m.rejected_calls for label, m in snapshots.items()},
        )
        _series(
            "circuit_breaker_failure_count",
            "gauge",
            "Current failure count",
            {label: m.failure_count for label, m in snapshots.items()},
        )
        _series(
            "circuit_breaker_success_count",
            "gauge",
            "Current success count",
            {label: m.success_count for label, m in snapshots.items()},
        )
        _series("retries_total", "counter", "Total retry attempts", retries)

        return "\n".join(lines) + "\n"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


# Global metrics collector
_global_collector: BreakerMetricsCollector | None = None


def get_metrics_collector() -> BreakerMetricsCollector:
    """Get the global metrics collector."""
    global _global_collector
    if _global_collector is None:
        _global_collector = BreakerMetricsCollector()
    return _global_collector


def set_metrics_collector(collector: BreakerMetricsCollector) -> None:
    """Set the global metrics collector."""
    global _global_collector
    _global_collector = collector
