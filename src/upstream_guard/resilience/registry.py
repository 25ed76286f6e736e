"""
Registry of resilient call wrappers, one per upstream dependency.

Tool handlers look up the wrapper for the dependency they call by label,
so every handler talking to the same upstream shares one circuit breaker.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from upstream_guard.resilience.circuit_breaker import CircuitBreakerConfig, CircuitMetrics
from upstream_guard.resilience.retry import RetryConfig
from upstream_guard.resilience.wrapper import ResilientCallWrapper

if TYPE_CHECKING:
    from upstream_guard.telemetry.metrics import BreakerMetricsCollector


class WrapperRegistry:
    """Lazily creates and caches one ResilientCallWrapper per label.

    Example:
        >>> registry = WrapperRegistry(retry=RetryConfig(max_retries=2))
        >>> search = registry.get("exa-search")
        >>> assert registry.get("exa-search") is search
    """

    def __init__(
        self,
        retry: RetryConfig | None = None,
        breaker: CircuitBreakerConfig | None = None,
        metrics_collector: BreakerMetricsCollector | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            retry: Default retry configuration for new wrappers
            breaker: Default breaker configuration for new wrappers
            metrics_collector: Collector every new wrapper registers with
        """
        self._retry = retry or RetryConfig()
        self._breaker = breaker or CircuitBreakerConfig()
        self._metrics_collector = metrics_collector
        self._wrappers: dict[str, ResilientCallWrapper] = {}
        self._lock = threading.Lock()

    def get(
        self,
        label: str,
        retry: RetryConfig | None = None,
        breaker: CircuitBreakerConfig | None = None,
    ) -> ResilientCallWrapper:
        """Get the wrapper for a label, creating it on first use.

        Configs passed here only apply when the wrapper is created.
        """
        with self._lock:
            wrapper = self._wrappers.get(label)
            if wrapper is None:
                wrapper = ResilientCallWrapper(
                    retry or self._retry,
                    breaker or self._breaker,
                    label=label,
                    metrics_collector=self._metrics_collector,
                )
                self._wrappers[label] = wrapper
            return wrapper

    def remove(self, label: str) -> bool:
        """Drop the wrapper for a label and unregister its metrics."""
        with self._lock:
            wrapper = self._wrappers.pop(label, None)
        if wrapper is None:
            return False
        wrapper.close()
        return True

    def labels(self) -> list[str]:
        with self._lock:
            return sorted(self._wrappers)

    def get_all_metrics(self) -> dict[str, CircuitMetrics]:
        """Snapshot every wrapper's breaker."""
        with self._lock:
            wrappers = dict(self._wrappers)
        return {label: wrapper.get_metrics() for label, wrapper in wrappers.items()}

    def reset_all(self) -> None:
        """Reset every breaker to CLOSED."""
        with self._lock:
            wrappers = list(self._wrappers.values())
        for wrapper in wrappers:
            wrapper.reset()

    def close(self) -> None:
        """Remove every wrapper."""
        for label in self.labels():
            self.remove(label)

    def __contains__(self, label: object) -> bool:
        with self._lock:
            return label in self._wrappers

    def __len__(self) -> int:
        with self._lock:
            return len(self._wrappers)
