"""Test helpers for the position monitor test suite"""

from tests.helpers.broker_stubs import (
    T0,
    FakeBroker,
    FakeClock,
    FlakyLedgerBackend,
)

__all__ = [
    "T0",
    "FakeBroker",
    "FakeClock",
    "FlakyLedgerBackend",
]
