"""
Tests for Rate Limiter

Validates token bucket algorithm, named channels and statistics tracking.
"""
from unittest.mock import patch

import pytest

from infra.rate_limiter import DEFAULT_CHANNEL_LIMITS, RateLimiter, RateLimitStats, TokenBucket


class TestTokenBucket:
    """Test token bucket implementation"""

    def test_bucket_starts_full(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=5.0)
        assert bucket.tokens == 10.0

    def test_consume_tokens(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=5.0)
        assert bucket.consume(3.0)
        assert bucket.tokens == pytest.approx(7.0, abs=0.01)

    def test_cannot_over_consume(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=0.001)
        bucket.consume(10.0)
        assert not bucket.consume(1.0)

    def test_tokens_refill_over_time(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.consume(10.0)

        # Simulate 0.5 seconds passing
        bucket.last_refill -= 0.5
        bucket.refill()

        assert 4.5 <= bucket.tokens <= 5.5

    def test_bucket_does_not_exceed_capacity(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.last_refill -= 2.0
        bucket.refill()
        assert bucket.tokens == 10.0

    def test_wait_time_calculation(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.consume(10.0)
        wait_time = bucket.wait_time(5.0)
        assert 0.45 <= wait_time <= 0.55


class TestRateLimitStats:

    def test_stats_start_at_zero(self):
        stats = RateLimitStats()
        assert stats.total_requests == 0
        assert stats.throttled_pct() == 0.0

    def test_record_throttled(self):
        stats = RateLimitStats()
        stats.record(0.0)
        stats.record(0.25)
        assert stats.total_requests == 2
        assert stats.throttled_requests == 1
        assert stats.max_wait_time_ms == 250.0
        assert stats.throttled_pct() == 50.0


class TestRateLimiter:

    def test_default_channels(self):
        limiter = RateLimiter()
        assert set(limiter.channels) == set(DEFAULT_CHANNEL_LIMITS)

    def test_override_and_extra_channels(self):
        limiter = RateLimiter({"broker": 5.0, "alerts": 0.5})
        assert limiter.get_stats("broker")["refill_rate"] == 5.0
        assert "alerts" in limiter.channels

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RateLimiter({"broker": 0})

    def test_unknown_channel(self):
        limiter = RateLimiter()
        with pytest.raises(ValueError, match="Invalid channel"):
            limiter.acquire("nope")

    def test_burst_without_waiting(self):
        limiter = RateLimiter({"ledger_read": 1.0}, burst_multiplier=2.0)
        with patch("infra.rate_limiter.time.sleep") as mock_sleep:
            assert limiter.acquire("ledger_read") == 0.0
            assert limiter.acquire("ledger_read") == 0.0
        mock_sleep.assert_not_called()

    def test_blocks_when_empty(self):
        limiter = RateLimiter({"ledger_write": 1.0}, burst_multiplier=1.0)
        limiter.acquire("ledger_write")
        with patch("infra.rate_limiter.time.sleep") as mock_sleep:
            waited = limiter.acquire("ledger_write", endpoint="PositionLevels")
        assert waited > 0
        mock_sleep.assert_called_once()
        assert limiter.get_stats("ledger_write")["throttled_requests"] == 1

    def test_non_blocking_raises(self):
        limiter = RateLimiter({"broker": 1.0}, burst_multiplier=1.0)
        limiter.acquire("broker")
        with pytest.raises(ValueError, match="block=False"):
            limiter.acquire("broker", block=False)

    def test_reset_stats(self):
        limiter = RateLimiter()
        limiter.acquire("broker")
        limiter.reset_stats()
        assert limiter.get_stats()["broker"]["total_requests"] == 0
