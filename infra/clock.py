"""Injectable time source.

Every cooldown, expiry and retry-delay decision reads time through a clock
object so tests can pin "now" and advance it without sleeping.
"""

import time
from datetime import datetime, timezone


class SystemClock:
    """Wall clock backed by the host time (UTC, timezone-aware)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


_clock = None


def get_clock() -> SystemClock:
    """Get singleton clock instance."""
    global _clock
    if _clock is None:
        _clock = SystemClock()
    return _clock
