"""Tests for the retry policy."""

import os

import httpx
import pytest

from upstream_guard.errors import (
    ErrorClass,
    ResilienceError,
    ResilienceErrorKind,
    TransportError,
    UpstreamError,
)
from upstream_guard.resilience import RetryConfig, RetryPolicy


def _upstream(status: int) -> UpstreamError:
    return UpstreamError.from_response(status)


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_default_config(self) -> None:
        """Test default retry configuration."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 30000
        assert config.exponential_base == 2.0
        assert config.jitter_ms == 100
        assert config.retryable_status_codes == frozenset({408, 429, 502, 503, 504})
        assert config.retryable_transport_codes == frozenset(
            {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN"}
        )
        assert config.max_attempts == 4

    def test_no_retry_config(self) -> None:
        """Test no-retry configuration."""
        config = RetryConfig.no_retry()
        assert config.max_retries == 0
        assert config.max_attempts == 1

    def test_negative_max_retries_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_retries"):
            RetryConfig(max_retries=-1)

    def test_base_delay_above_max_rejected(self) -> None:
        with pytest.raises(ValueError, match="must not exceed"):
            RetryConfig(base_delay_ms=500, max_delay_ms=100)

    def test_negative_jitter_rejected(self) -> None:
        with pytest.raises(ValueError, match="jitter_ms"):
            RetryConfig(jitter_ms=-1)

    def test_exponential_base_below_one_rejected(self) -> None:
        with pytest.raises(ValueError, match="exponential_base"):
            RetryConfig(exponential_base=0.5)

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test reading retry settings from the environment."""
        monkeypatch.setenv("UPSTREAM_GUARD_RETRY_MAX_RETRIES", "5")
        monkeypatch.setenv("UPSTREAM_GUARD_RETRY_BASE_DELAY_MS", "50")
        monkeypatch.setenv("UPSTREAM_GUARD_RETRY_JITTER_MS", "0")
        config = RetryConfig.from_env()
        assert config.max_retries == 5
        assert config.base_delay_ms == 50
        assert config.jitter_ms == 0
        assert config.max_delay_ms == 30000

    def test_from_env_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in list(os.environ):
            if name.startswith("UPSTREAM_GUARD_RETRY_"):
                monkeypatch.delenv(name)
        assert RetryConfig.from_env() == RetryConfig()


class TestCalculateDelay:
    """Tests for backoff delay calculation."""

    def test_exponential_growth(self, no_jitter) -> None:
        """Test exponential backoff calculation."""
        policy = RetryPolicy(
            RetryConfig(base_delay_ms=1000, max_delay_ms=60000, jitter_ms=0),
            rng=no_jitter,
        )
        assert policy.calculate_delay(0) == 1.0
        assert policy.calculate_delay(1) == 2.0
        assert policy.calculate_delay(2) == 4.0

    def test_delay_capped_at_max(self) -> None:
        """Test that the exponential part is capped at max_delay_ms."""
        policy = RetryPolicy(
            RetryConfig(base_delay_ms=1000, max_delay_ms=5000, jitter_ms=0)
        )
        assert policy.calculate_delay(3) == 5.0
        assert policy.calculate_delay(10) == 5.0

    def test_huge_attempt_does_not_overflow(self) -> None:
        policy = RetryPolicy(RetryConfig(base_delay_ms=10, max_delay_ms=100, jitter_ms=0))
        assert policy.calculate_delay(5000) == 0.1

    def test_jitter_is_added_on_top(self, fixed_random) -> None:
        """Jitter is added to the capped delay rather than replacing it."""
        rng = fixed_random(0.5)
        policy = RetryPolicy(
            RetryConfig(base_delay_ms=10, max_delay_ms=100, jitter_ms=5), rng=rng
        )
        assert policy.calculate_delay(0) == pytest.approx(0.0125)
        # Capped at 100ms, then jitter
        assert policy.calculate_delay(6) == pytest.approx(0.1025)
        assert rng.calls == [(0, 5), (0, 5)]

    def test_jitter_bounds(self) -> None:
        """Delay for attempt k lies within [capped, capped + jitter]."""
        policy = RetryPolicy(RetryConfig(base_delay_ms=10, max_delay_ms=100, jitter_ms=5))
        for attempt in range(8):
            capped = min(100, 10 * 2**attempt) / 1000
            for _ in range(20):
                delay = policy.calculate_delay(attempt)
                assert capped <= delay <= capped + 0.005

    def test_misbehaving_random_source_is_clamped(self, fixed_random) -> None:
        policy = RetryPolicy(
            RetryConfig(base_delay_ms=10, max_delay_ms=100, jitter_ms=5),
            rng=fixed_random(3.0),
        )
        assert policy.calculate_delay(0) == pytest.approx(0.015)

    def test_zero_jitter_skips_random_source(self, fixed_random) -> None:
        rng = fixed_random(0.5)
        policy = RetryPolicy(RetryConfig(jitter_ms=0), rng=rng)
        policy.calculate_delay(0)
        assert rng.calls == []


class TestRetryability:
    """Tests for failure retryability."""

    @pytest.mark.parametrize("status", [408, 429, 502, 503, 504])
    def test_default_retryable_statuses(self, status: int) -> None:
        assert RetryPolicy().is_retryable(_upstream(status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 500])
    def test_default_non_retryable_statuses(self, status: int) -> None:
        """500 is not in the default set even though it is a server error."""
        assert not RetryPolicy().is_retryable(_upstream(status))

    def test_custom_status_codes(self) -> None:
        policy = RetryPolicy(RetryConfig(retryable_status_codes=frozenset({500})))
        assert policy.is_retryable(_upstream(500))
        assert not policy.is_retryable(_upstream(503))

    @pytest.mark.parametrize("code", ["ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN"])
    def test_default_retryable_transport_codes(self, code: str) -> None:
        assert RetryPolicy().is_retryable(TransportError("network down", code=code))

    def test_connection_refused_not_retried_by_default(self) -> None:
        error = TransportError("refused", code="ECONNREFUSED")
        assert not RetryPolicy().is_retryable(error)

    def test_transport_code_found_in_message(self) -> None:
        assert RetryPolicy().is_retryable(OSError("read ECONNRESET"))

    def test_httpx_exceptions(self) -> None:
        policy = RetryPolicy()
        assert policy.is_retryable(httpx.ReadTimeout("timed out"))
        assert policy.is_retryable(httpx.ReadError("connection reset"))
        assert not policy.is_retryable(httpx.ConnectError("refused"))

    def test_timeout_retry_can_be_disabled(self) -> None:
        error = ResilienceError(
            ResilienceErrorKind.TIMEOUT, "Operation timed out after 10ms", retryable=True
        )
        assert RetryPolicy().is_retryable(error)
        assert not RetryPolicy(RetryConfig(retry_on_timeout=False)).is_retryable(
            TimeoutError()
        )

    def test_circuit_open_is_not_retryable(self) -> None:
        error = ResilienceError(ResilienceErrorKind.CIRCUIT_OPEN, "open")
        assert not RetryPolicy().is_retryable(error)

    def test_plain_errors_are_not_retryable(self) -> None:
        assert not RetryPolicy().is_retryable(ValueError("bad input"))


class TestDecide:
    """Tests for RetryPolicy.decide."""

    def test_retry_with_delay(self, no_jitter) -> None:
        policy = RetryPolicy(
            RetryConfig(max_retries=3, base_delay_ms=10, max_delay_ms=100, jitter_ms=5),
            rng=no_jitter,
        )
        decision = policy.decide(1, _upstream(503))
        assert decision.retry
        assert decision.delay == pytest.approx(0.02)
        assert not decision.exhausted
        assert decision.classification is not None
        assert decision.classification.error_class == ErrorClass.OVERLOADED

    def test_give_up_when_budget_spent(self) -> None:
        policy = RetryPolicy(RetryConfig(max_retries=3))
        decision = policy.decide(3, _upstream(503))
        assert not decision.retry
        assert decision.delay == 0.0
        assert decision.exhausted
        assert "exhausted" in decision.reason

    def test_give_up_on_non_retryable(self) -> None:
        decision = RetryPolicy().decide(0, _upstream(400))
        assert not decision.retry
        assert not decision.exhausted
        assert "non-retryable" in decision.reason

    def test_zero_retries_never_retries(self) -> None:
        decision = RetryPolicy(RetryConfig.no_retry()).decide(0, _upstream(503))
        assert not decision.retry
        assert decision.exhausted
