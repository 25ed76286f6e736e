#!/usr/bin/env python3
"""
Resilient upstream calls example.

This example shows how a tool handler protects calls to a flaky upstream:
- Retry with exponential backoff and jitter
- Circuit breaker per upstream label
- Breaker metrics in Prometheus format

No network access is needed; the upstream is simulated.

Usage:
    python examples/resilience.py
"""

import asyncio
import random

from upstream_guard import ResilienceError, UpstreamError, create_resilient_wrapper
from upstream_guard.telemetry import BreakerMetricsCollector


class FlakyUpstream:
    """Simulated upstream that fails with 503 a fraction of the time."""

    def __init__(self, failure_rate: float) -> None:
        self.failure_rate = failure_rate
        self.requests = 0

    async def search(self, query: str) -> dict:
        self.requests += 1
        await asyncio.sleep(0.005)
        if random.random() < self.failure_rate:
            raise UpstreamError.from_response(503, {"error": "service unavailable"})
        return {"query": query, "results": [f"{query} result"]}


async def transient_failures(collector: BreakerMetricsCollector) -> None:
    """Retries hide a mostly healthy upstream's transient failures."""
    print("Calling a mostly healthy upstream...")
    upstream = FlakyUpstream(failure_rate=0.3)
    wrapper = create_resilient_wrapper(
        "flaky-search",
        {"maxRetries": 3, "baseDelayMs": 10, "maxDelayMs": 100, "jitterMs": 5},
        {"failureThreshold": 3, "successThreshold": 2, "resetTimeoutMs": 20},
        metrics_collector=collector,
    )

    for i in range(5):
        result = await wrapper.execute_with_result(
            lambda i=i: upstream.search(f"q{i}"), "search"
        )
        status = "ok" if result.success else f"failed: {result.error}"
        print(f"  q{i}: {status} after {result.attempts} attempt(s)")

    print(f"  upstream saw {upstream.requests} requests")
    print()


async def outage(collector: BreakerMetricsCollector) -> None:
    """The breaker opens during an outage and fails fast until it recovers."""
    print("Calling an upstream during an outage...")
    upstream = FlakyUpstream(failure_rate=1.0)
    wrapper = create_resilient_wrapper(
        "down-search",
        {"maxRetries": 1, "baseDelayMs": 10, "maxDelayMs": 100, "jitterMs": 5},
        {"failureThreshold": 3, "successThreshold": 2, "resetTimeoutMs": 50},
        metrics_collector=collector,
    )

    for i in range(5):
        try:
            await wrapper.execute(lambda i=i: upstream.search(f"q{i}"), "search")
        except ResilienceError as e:
            print(f"  q{i}: rejected ({e.code}), retry in {e.time_until_retry:.3f}s")
        except UpstreamError as e:
            print(f"  q{i}: upstream error {e.status_code} after {e.attempts} attempts")

    print("  upstream recovers, waiting for the reset timeout...")
    upstream.failure_rate = 0.0
    await asyncio.sleep(0.06)
    for _ in range(2):
        await wrapper.execute(lambda: upstream.search("recovered"), "search")
    print(f"  breaker state: {wrapper.state.value}")
    print()


async def main() -> None:
    """Run resilience examples."""
    collector = BreakerMetricsCollector()
    await transient_failures(collector)
    await outage(collector)

    print("Prometheus metrics:")
    print(collector.to_prometheus())


if __name__ == "__main__":
    asyncio.run(main())
