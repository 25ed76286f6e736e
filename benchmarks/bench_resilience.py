#!/usr/bin/env python3
"""
Resilience performance benchmarks.

Measures the overhead the wrapper adds on the happy path.
"""

import asyncio
import time
from typing import Any

from upstream_guard.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    ResilientCallWrapper,
    RetryConfig,
    RetryPolicy,
)
from upstream_guard.telemetry import BreakerMetricsCollector


async def noop_operation() -> str:
    """No-op operation for overhead measurement."""
    return "result"


def _result(name: str, iterations: int, elapsed: float) -> dict[str, Any]:
    return {
        "name": name,
        "iterations": iterations,
        "elapsed_seconds": elapsed,
        "throughput_ops": iterations / elapsed,
        "latency_us": (elapsed / iterations) * 1_000_000,
    }


async def benchmark_baseline(iterations: int = 10000) -> dict[str, Any]:
    """Benchmark baseline async operation."""
    start = time.perf_counter()
    for _ in range(iterations):
        await noop_operation()
    return _result("Baseline (no resilience)", iterations, time.perf_counter() - start)


def benchmark_retry_delays(iterations: int = 100000) -> dict[str, Any]:
    """Benchmark backoff delay calculation."""
    policy = RetryPolicy(RetryConfig())

    start = time.perf_counter()
    for i in range(iterations):
        policy.calculate_delay(i % 8)
    return _result("RetryPolicy.calculate_delay", iterations, time.perf_counter() - start)


async def benchmark_circuit_breaker(iterations: int = 10000) -> dict[str, Any]:
    """Benchmark circuit breaker overhead (closed circuit)."""
    breaker = CircuitBreaker(CircuitBreakerConfig(timeout_ms=None), label="bench")

    start = time.perf_counter()
    for _ in range(iterations):
        await breaker.call(noop_operation)
    return _result("CircuitBreaker (closed)", iterations, time.perf_counter() - start)


async def benchmark_wrapper(
    iterations: int = 10000, timeout_ms: float | None = None
) -> dict[str, Any]:
    """Benchmark the full wrapper on the happy path."""
    wrapper = ResilientCallWrapper(
        RetryConfig(),
        CircuitBreakerConfig(timeout_ms=timeout_ms),
        label="bench",
        metrics_collector=BreakerMetricsCollector(),
    )
    name = "ResilientCallWrapper" + (" (with timeout)" if timeout_ms else "")

    start = time.perf_counter()
    for _ in range(iterations):
        await wrapper.execute(noop_operation)
    elapsed = time.perf_counter() - start
    wrapper.close()
    return _result(name, iterations, elapsed)


async def benchmark_concurrent_execution(
    concurrency: int = 100, iterations: int = 1000
) -> dict[str, Any]:
    """Benchmark concurrent calls sharing one breaker."""
    wrapper = ResilientCallWrapper(
        RetryConfig(), CircuitBreakerConfig(timeout_ms=None), label="bench"
    )

    async def task() -> None:
        for _ in range(iterations // concurrency):
            await wrapper.execute(noop_operation)

    start = time.perf_counter()
    await asyncio.gather(*[task() for _ in range(concurrency)])
    return _result(
        f"Concurrent ({concurrency} tasks)", iterations, time.perf_counter() - start
    )


async def run_benchmarks() -> None:
    """Run all benchmarks and print results."""
    print("=" * 60)
    print("Resilience Benchmarks")
    print("=" * 60)
    print()

    baseline = await benchmark_baseline()
    results = [
        baseline,
        benchmark_retry_delays(),
        await benchmark_circuit_breaker(),
        await benchmark_wrapper(),
        await benchmark_wrapper(timeout_ms=60000),
    ]

    for result in results:
        overhead = ""
        if result is not baseline and result["name"] != "RetryPolicy.calculate_delay":
            extra = result["latency_us"] - baseline["latency_us"]
            overhead = f" (+{extra:.2f} µs)"
        print(f"{result['name']}:")
        print(f"  Throughput: {result['throughput_ops']:.0f} ops/sec")
        print(f"  Latency: {result['latency_us']:.2f} µs/op{overhead}")
        print()

    print("Concurrent Execution:")
    for concurrency in (10, 100):
        result = await benchmark_concurrent_execution(concurrency)
        print(f"  {concurrency} parallel: {result['throughput_ops']:.0f} ops/sec")


if __name__ == "__main__":
    asyncio.run(run_benchmarks())
