"""Root pytest fixtures for upstream-guard tests."""

from __future__ import annotations

import io
from collections.abc import Iterator

import pytest

from upstream_guard.telemetry import LogLevel, configure_logging


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedRandom:
    """Jitter source returning a fixed fraction of the requested range."""

    def __init__(self, fraction: float = 0.0) -> None:
        self.fraction = fraction
        self.calls: list[tuple[float, float]] = []

    def uniform(self, a: float, b: float) -> float:
        self.calls.append((a, b))
        return a + (b - a) * self.fraction


class RecordingSleep:
    """Async sleep replacement that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_jitter() -> FixedRandom:
    return FixedRandom(0.0)


@pytest.fixture
def fixed_random() -> type[FixedRandom]:
    """The FixedRandom class, for tests that need a non-zero fraction."""
    return FixedRandom


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep UPSTREAM_GUARD_* settings from the host out of tests."""
    for name in (
        "UPSTREAM_GUARD_ALLOW_METRICS_FAILURE",
        "UPSTREAM_GUARD_HTTP_TIMEOUT_SECS",
    ):
        monkeypatch.delenv(name, raising=False)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as using real timers",
    )


@pytest.fixture
def json_log_stream() -> Iterator[io.StringIO]:
    """Route the upstream_guard logger tree to a JSON stream at DEBUG."""
    stream = io.StringIO()
    configure_logging(LogLevel.DEBUG, format="json", stream=stream)
    yield stream
    configure_logging()
