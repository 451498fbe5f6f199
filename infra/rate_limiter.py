"""
Rate Limiter with Token Bucket Algorithm

Pre-emptive throttling for the two remote collaborators that publish quotas:

- Google Sheets API: 60 read and 60 write requests per minute per user
- Alpaca Trading API: 200 requests per minute per account

Every ledger and broker call acquires a token from a named channel before the
request leaves the process, so bursts (a reconciliation scan followed by a
row of deletes) are smoothed instead of bouncing off 429s.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# requests/second per channel
DEFAULT_CHANNEL_LIMITS: Dict[str, float] = {
    "ledger_read": 1.0,
    "ledger_write": 1.0,
    "broker": 3.0,
}


@dataclass
class TokenBucket:
    """
    Token bucket for one channel.

    Tokens replenish at `refill_rate` per second up to `capacity`.
    Each request consumes one token.
    """
    capacity: float
    refill_rate: float
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self):
        self.tokens = self.capacity
        self.last_refill = time.monotonic()

    def refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        """Seconds until `tokens` are available (0 if available now)."""
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


@dataclass
class RateLimitStats:
    """Per-channel counters for monitoring"""
    total_requests: int = 0
    throttled_requests: int = 0
    total_wait_time_ms: float = 0.0
    max_wait_time_ms: float = 0.0

    def record(self, wait_time_seconds: float) -> None:
        self.total_requests += 1
        if wait_time_seconds > 0:
            self.throttled_requests += 1
            wait_ms = wait_time_seconds * 1000.0
            self.total_wait_time_ms += wait_ms
            self.max_wait_time_ms = max(self.max_wait_time_ms, wait_ms)

    def throttled_pct(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.throttled_requests / self.total_requests) * 100.0


class RateLimiter:
    """
    Token-bucket limiter with named channels.

    Usage:
        limiter = RateLimiter({"ledger_read": 1.0, "broker": 3.0})
        limiter.acquire("ledger_read", endpoint="PositionLevels")
        # ... make the call ...
    """

    def __init__(
        self,
        channel_limits: Optional[Dict[str, float]] = None,
        burst_multiplier: float = 2.0,
    ):
        """
        Args:
            channel_limits: channel name -> requests/second
            burst_multiplier: bucket capacity as a multiple of the rate
        """
        limits = dict(DEFAULT_CHANNEL_LIMITS)
        limits.update(channel_limits or {})
        for name, rate in limits.items():
            if rate <= 0:
                raise ValueError(f"Rate for channel {name} must be positive, got {rate}")

        self._buckets: Dict[str, TokenBucket] = {
            name: TokenBucket(capacity=max(1.0, rate * burst_multiplier), refill_rate=rate)
            for name, rate in limits.items()
        }
        self._stats: Dict[str, RateLimitStats] = {name: RateLimitStats() for name in limits}
        self._recent_throttles: deque = deque(maxlen=100)
        self._lock = Lock()

        summary = ", ".join(f"{name}={rate}/s" for name, rate in limits.items())
        logger.info(f"Initialized RateLimiter: {summary}, burst={burst_multiplier}x")

    @property
    def channels(self):
        return list(self._buckets)

    def _bucket(self, channel: str) -> TokenBucket:
        bucket = self._buckets.get(channel)
        if bucket is None:
            raise ValueError(f"Invalid channel: {channel}. Known: {sorted(self._buckets)}")
        return bucket

    def acquire(self, channel: str, endpoint: str = "unknown", tokens: float = 1.0,
                block: bool = True) -> float:
        """
        Acquire tokens before a remote call.

        Returns:
            Seconds waited (0 if no wait was needed)

        Raises:
            ValueError: unknown channel, or tokens unavailable with block=False
        """
        bucket = self._bucket(channel)

        with self._lock:
            wait_time = bucket.wait_time(tokens)
            if wait_time == 0:
                bucket.consume(tokens)
                self._stats[channel].record(0.0)
                return 0.0

            if not block:
                raise ValueError(
                    f"Rate limit exceeded for {channel}:{endpoint}. "
                    f"Need to wait {wait_time:.2f}s but block=False."
                )

            if wait_time > 1.0:
                logger.warning(
                    f"Rate limit throttle: {channel}:{endpoint} waiting {wait_time:.2f}s "
                    f"(tokens={bucket.tokens:.1f}/{bucket.capacity:.1f})"
                )
            else:
                logger.debug(f"Rate limit pause: {channel}:{endpoint} waiting {wait_time:.3f}s")

            self._recent_throttles.append({
                "timestamp": datetime.now(timezone.utc),
                "channel": channel,
                "endpoint": endpoint,
                "wait_time": wait_time,
            })

        # Sleep outside the lock
        time.sleep(wait_time)

        with self._lock:
            bucket.consume(tokens)
            self._stats[channel].record(wait_time)

        return wait_time

    def get_stats(self, channel: Optional[str] = None) -> Dict:
        """Channel stats, or all channels when `channel` is None."""
        if channel is None:
            return {name: self.get_stats(name) for name in self._buckets}

        bucket = self._bucket(channel)
        with self._lock:
            stats = self._stats[channel]
            return {
                "channel": channel,
                "total_requests": stats.total_requests,
                "throttled_requests": stats.throttled_requests,
                "throttled_pct": stats.throttled_pct(),
                "total_wait_time_ms": stats.total_wait_time_ms,
                "max_wait_time_ms": stats.max_wait_time_ms,
                "current_tokens": bucket.tokens,
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
            }

    def reset_stats(self) -> None:
        """Reset statistics (useful for testing)"""
        with self._lock:
            self._stats = {name: RateLimitStats() for name in self._buckets}
            self._recent_throttles.clear()
