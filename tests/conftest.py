"""
Pytest configuration and fixtures for the position monitor tests.
"""
import pytest

from core.position_store import PositionStateStore
from core.trade_journal import TradeJournal
from infra.ledger import Ledger
from tests.helpers import FakeBroker, FakeClock, FlakyLedgerBackend


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset the metrics singleton between tests so Prometheus collectors
    are never registered twice.
    """
    from infra.metrics import MetricsRecorder
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FlakyLedgerBackend()


@pytest.fixture
def ledger(backend):
    return Ledger(backend)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def store(ledger, clock):
    return PositionStateStore(ledger, clock=clock, ttl_hours=24)


@pytest.fixture
def journal(ledger, clock):
    return TradeJournal(ledger, clock=clock)
