"""
Tests for PositionStateStore

Exit levels are keyed by symbol: storing twice overwrites, removal is
idempotent, expired records vanish on read, and ledger failures surface as
False/None rather than exceptions.
"""
from datetime import timedelta

import pytest

from core.models import PositionLevels
from core.position_store import PositionStateStore
from infra.ledger import POSITION_LEVELS, LedgerError
from infra.metrics import MetricsRecorder


def _levels(symbol="AAPL", side="long", sl=95.0, tp=110.0, strategy="sma"):
    return PositionLevels(symbol=symbol, side=side, stop_loss=sl, take_profit=tp,
                          entry_price=100.0, quantity=10, strategy=strategy, order_id="o-1")


class TestStoreAndGet:

    def test_round_trip_stamps_timestamps(self, store, clock):
        assert store.store_levels("AAPL", _levels())

        levels = store.get_levels("AAPL")
        assert levels.stop_loss == 95.0
        assert levels.take_profit == 110.0
        assert levels.side == "long"
        assert levels.quantity == 10
        assert levels.created_at == clock.now()
        assert levels.expires_at == clock.now() + timedelta(hours=24)

    def test_store_twice_overwrites(self, store, backend):
        store.store_levels("AAPL", _levels(sl=95.0))
        store.store_levels("AAPL", _levels(sl=97.0))

        assert store.get_levels("AAPL").stop_loss == 97.0
        assert len(backend.tables[POSITION_LEVELS.name]) == 1

    def test_accepts_mapping_and_normalizes_symbol(self, store):
        assert store.store_levels("aapl", {"side": "buy", "stop_loss": "95.5"})
        levels = store.get_levels("AAPL")
        assert levels.symbol == "AAPL"
        assert levels.side == "long"
        assert levels.stop_loss == 95.5
        assert levels.take_profit is None

    def test_rejects_levels_without_sl_or_tp(self, store, backend):
        assert store.store_levels("AAPL", _levels(sl=None, tp=None)) is False
        assert POSITION_LEVELS.name not in backend.tables

    def test_rejects_unknown_side(self, store):
        assert store.store_levels("AAPL", {"side": "sideways", "stop_loss": 95.0}) is False

    def test_get_missing_returns_none(self, store):
        assert store.get_levels("MSFT") is None


class TestExpiry:

    def test_expired_levels_are_absent_and_deleted(self, store, clock, ledger):
        store.store_levels("AAPL", _levels())
        clock.advance(hours=24, seconds=1)

        assert store.get_levels("AAPL") is None
        assert ledger.get(POSITION_LEVELS.name, "AAPL") is None

    def test_not_expired_at_exact_boundary(self, store, clock):
        store.store_levels("AAPL", _levels())
        clock.advance(hours=24)
        assert store.get_levels("AAPL") is not None

    def test_custom_ttl(self, ledger, clock):
        store = PositionStateStore(ledger, clock=clock, ttl_hours=1)
        store.store_levels("AAPL", _levels())
        clock.advance(minutes=61)
        assert store.get_levels("AAPL") is None

    def test_ttl_must_be_positive(self, ledger):
        with pytest.raises(ValueError):
            PositionStateStore(ledger, ttl_hours=0)

    def test_cleanup_expired(self, store, clock):
        store.store_levels("AAPL", _levels("AAPL"))
        clock.advance(hours=12)
        store.store_levels("MSFT", _levels("MSFT"))
        clock.advance(hours=13)

        assert store.cleanup_expired() == 1
        assert store.list_symbols() == ["MSFT"]


class TestUpdateAndRemove:

    def test_update_merges_fields(self, store):
        store.store_levels("AAPL", _levels())
        assert store.update_levels("AAPL", {"stop_loss": 98.0})

        levels = store.get_levels("AAPL")
        assert levels.stop_loss == 98.0
        assert levels.take_profit == 110.0

    def test_update_without_record_returns_false(self, store):
        assert store.update_levels("AAPL", {"stop_loss": 98.0}) is False

    def test_update_rejects_unknown_fields(self, store):
        store.store_levels("AAPL", _levels())
        with pytest.raises(ValueError, match="Cannot update"):
            store.update_levels("AAPL", {"expires_at": None})

    def test_update_cannot_clear_both_levels(self, store):
        store.store_levels("AAPL", _levels())
        assert store.update_levels("AAPL", {"stop_loss": None, "take_profit": None}) is False
        assert store.get_levels("AAPL").stop_loss == 95.0

    def test_remove_is_idempotent(self, store):
        store.store_levels("AAPL", _levels())
        assert store.remove_levels("AAPL") is True
        assert store.remove_levels("AAPL") is True
        assert store.get_levels("AAPL") is None


class TestLedgerFailures:

    def test_store_failure_returns_false(self, store, backend):
        backend.fail_writes = True
        assert store.store_levels("AAPL", _levels()) is False

    def test_read_failure_returns_none(self, store, backend, ledger):
        store.store_levels("AAPL", _levels())
        ledger.begin_invocation()
        backend.fail_reads = True
        assert store.get_levels("AAPL") is None

    def test_remove_failure_returns_false(self, store, backend):
        store.store_levels("AAPL", _levels())
        backend.fail_writes = True
        assert store.remove_levels("AAPL") is False

    def test_list_symbols_raises_on_outage(self, store, backend):
        backend.fail_reads = True
        with pytest.raises(LedgerError):
            store.list_symbols()

    def test_failures_counted_in_metrics(self, ledger, backend, clock):
        metrics = MetricsRecorder(enabled=False)
        store = PositionStateStore(ledger, clock=clock, metrics=metrics)
        backend.fail_reads = True
        store.get_levels("AAPL")
        assert metrics.ledger_error_snapshot() == {"levels_read": 1}


class TestAggregates:

    def test_stats(self, store, clock):
        store.store_levels("AAPL", _levels("AAPL", strategy="sma"))
        store.store_levels("TSLA", _levels("TSLA", side="short", sl=110.0, tp=90.0, strategy="sma"))
        clock.advance(hours=12)
        store.store_levels("MSFT", _levels("MSFT", strategy=""))
        clock.advance(hours=13)

        stats = store.stats()
        assert stats["total"] == 3
        assert stats["expired"] == 2
        assert stats["valid"] == 1
        assert stats["by_side"] == {"long": 2, "short": 1}
        assert stats["by_strategy"] == {"sma": 2, "unknown": 1}

    def test_list_symbols_includes_expired(self, store, clock):
        store.store_levels("AAPL", _levels())
        clock.advance(days=2)
        assert store.list_symbols() == ["AAPL"]
        assert store.stored_count() == 1

    def test_bulk_store_collects_failures(self, store):
        result = store.bulk_store([_levels("AAPL"), _levels("MSFT", sl=None, tp=None)])
        assert result == {"successful": 1, "failed": 1, "errors": ["MSFT"]}

    def test_export_all_skips_expired(self, store, clock):
        store.store_levels("AAPL", _levels("AAPL"))
        clock.advance(hours=25)
        store.store_levels("MSFT", _levels("MSFT"))

        exported = store.export_all()
        assert [r["symbol"] for r in exported] == ["MSFT"]
        assert exported[0]["expires_at"].startswith("2024-03-06")
