"""
Integration tests for TradingCyclePipeline

Each test drives whole invocations against the fake broker and an
in-memory ledger: exit sweep first, then sizing, gating, submission and
level storage for each signal.
"""
import pytest

from core.broker_alpaca import Account
from core.exit_monitor import EXECUTED, FAILED, SKIPPED, TAKE_PROFIT, ExitMonitor
from core.risk import RiskManager
from core.trade_gate import TradeGate
from core.trading_cycle import TradingCyclePipeline
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.ledger import SIGNAL_STRENGTH
from infra.metrics import MetricsRecorder
from strategy.signals import TradeSignal

POLICY = {
    "gate": {
        "min_seconds_between_trades": 60,
        "signal_improvement_threshold": 0.30,
        "max_position_value_usd": 25000,
        "max_position_pct_of_equity": 0.10,
    },
    "exits": {"price_buffer": 0.001, "max_retries": 3, "retry_delay_seconds": 1.0},
    "risk": {
        "max_position_size": 0.05,
        "min_position_value_usd": 100,
        "stop_loss_pct": 0.03,
        "take_profit_pct": 0.06,
        "max_concurrent_positions": 5,
        "max_daily_loss": 0.02,
    },
}


@pytest.fixture
def alerts():
    return AlertService(AlertConfig(enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO,
                                    dry_run=True))


def _pipeline(ledger, broker, store, journal, clock, alerts, dry_run=False, metrics=None):
    gate = TradeGate(POLICY["gate"], journal, broker, clock=clock, metrics=metrics)
    exits = ExitMonitor(POLICY["exits"], broker, store, journal=journal, clock=clock,
                        metrics=metrics, alerts=alerts, dry_run=dry_run)
    return TradingCyclePipeline(
        ledger, broker, store, journal, gate, exits, RiskManager(POLICY["risk"]),
        clock=clock, metrics=metrics, alerts=alerts, dry_run=dry_run,
    )


@pytest.fixture
def pipeline(ledger, broker, store, journal, clock, alerts):
    return _pipeline(ledger, broker, store, journal, clock, alerts)


def _signal(symbol="X", price=50.0, size=0.005, confidence=0.6, side="buy"):
    # equity 100k * 0.005 = $500 -> 10 shares at $50
    return TradeSignal(symbol=symbol, side=side, current_price=price, position_size=size,
                       confidence=confidence, strategy="sma_crossover")


class TestEntryThenExit:

    def test_full_lifecycle(self, pipeline, broker, store, journal, clock):
        broker.set_quote("X", 49.98, 50.0)

        first = pipeline.execute_cycle([_signal()])
        (entry,) = first.executed
        assert entry.quantity == 10
        assert entry.stop_loss == 48.5
        assert entry.take_profit == 53.0
        assert broker.submitted[-1]["side"] == "buy"

        levels = store.get_levels("X")
        assert (levels.stop_loss, levels.take_profit, levels.quantity) == (48.5, 53.0, 10)
        assert journal.last_signal("X", "buy").order_id == entry.order_id

        clock.advance(minutes=5)
        broker.set_quote("X", 53.10, 53.12)
        second = pipeline.execute_cycle([])

        (exit_result,) = second.sweep.exits_executed
        assert exit_result.trigger == TAKE_PROFIT
        assert broker.submitted[-1] == {"symbol": "X", "qty": 10, "side": "sell",
                                        "type": "market", "time_in_force": "day"}
        assert exit_result.fill_price == 53.10
        assert exit_result.realized_pnl == pytest.approx(31.0)
        assert store.get_levels("X") is None
        assert second.no_trade_reason == "no_signals"

    def test_exit_starts_cooldown(self, pipeline, broker, store, clock):
        broker.add_position("X", 10, 50.0)
        broker.set_quote("X", 53.10, 53.12)
        store.store_levels("X", {"side": "long", "stop_loss": 48.5, "take_profit": 53.0, "entry_price": 50.0})

        result = pipeline.execute_cycle([_signal(price=53.10)])
        assert len(result.sweep.exits_executed) == 1
        (trade,) = result.trades
        assert trade.status == SKIPPED
        assert "Cooldown active" in trade.reasons[0]

    def test_exit_runs_before_sizing(self, pipeline, broker, store, clock):
        broker.add_position("X", 10, 50.0)
        broker.set_quote("X", 53.10, 53.12)
        broker.set_quote("Y", 19.98, 20.0)
        store.store_levels("X", {"side": "long", "stop_loss": 48.5, "take_profit": 53.0})

        result = pipeline.execute_cycle([_signal("Y", price=20.0)])
        sells = [o for o in broker.submitted if o["side"] == "sell"]
        buys = [o for o in broker.submitted if o["side"] == "buy"]
        assert broker.submitted.index(sells[0]) < broker.submitted.index(buys[0])
        assert result.executed[0].symbol == "Y"


class TestEntryFailures:

    def test_dry_run_submits_nothing(self, ledger, broker, store, journal, clock, alerts):
        pipeline = _pipeline(ledger, broker, store, journal, clock, alerts, dry_run=True)
        result = pipeline.execute_cycle([_signal()])

        (trade,) = result.trades
        assert trade.status == SKIPPED
        assert trade.reasons == ["dry_run"]
        assert broker.submitted == []
        assert store.get_levels("X") is None

    def test_submission_failure_records_signal_without_order(self, pipeline, broker, journal, store):
        broker.submit_failures = 1
        result = pipeline.execute_cycle([_signal()])

        (trade,) = result.trades
        assert trade.status == FAILED
        assert journal.last_signal("X", "buy").order_id is None
        assert journal.last_trade("X") is None
        assert store.get_levels("X") is None

    def test_level_store_failure_marks_unprotected(self, pipeline, broker, backend, alerts):
        broker.set_quote("X", 49.98, 50.0)
        backend.fail_writes = True

        result = pipeline.execute_cycle([_signal()])
        (trade,) = result.trades
        assert trade.status == EXECUTED
        assert trade.unprotected
        assert any("Unprotected entry" in a["text"] and "CRITICAL" in a["text"] for a in alerts.sent)

    def test_gate_rejection_records_nothing(self, pipeline, broker, backend):
        broker.account = Account(equity=100_000.0, cash=10.0, buying_power=10.0, last_equity=100_000.0)

        result = pipeline.execute_cycle([_signal("Z", price=10.0)])
        assert result.trades[0].status == SKIPPED
        assert "available_cash" in result.trades[0].reasons[0]
        assert backend.tables.get(SIGNAL_STRENGTH.name, []) == []
        assert broker.submitted == []


class TestCycleGuards:

    def test_market_closed_skips_entries_but_sweeps(self, pipeline, broker, store):
        broker.market_open = False
        store.store_levels("GONE", {"side": "long", "stop_loss": 1.0})

        result = pipeline.execute_cycle([_signal()])
        assert result.no_trade_reason == "market_closed"
        assert result.sweep.orphans_cleaned == 1
        assert broker.submitted == []

    def test_daily_loss_limit(self, pipeline, broker):
        broker.account = Account(equity=97_000.0, cash=50_000.0, buying_power=50_000.0,
                                 last_equity=100_000.0)
        result = pipeline.execute_cycle([_signal()])
        assert result.no_trade_reason == "daily_loss_limit"
        assert broker.submitted == []

    def test_account_unavailable(self, pipeline, broker):
        broker.fail_account = True
        result = pipeline.execute_cycle([_signal()])
        assert result.no_trade_reason == "account_unavailable"
        assert result.trades[0].status == SKIPPED

    def test_cash_consumed_across_signals(self, pipeline, broker):
        broker.account = Account(equity=100_000.0, cash=700.0, buying_power=700.0, last_equity=100_000.0)
        result = pipeline.execute_cycle([_signal("A"), _signal("B")])

        assert [t.status for t in result.trades] == [EXECUTED, SKIPPED]
        assert "available_cash" in result.trades[1].reasons[0]

    def test_max_concurrent_positions(self, pipeline, broker):
        for symbol in ("A", "B", "C", "D", "E"):
            broker.add_position(symbol, 1, 10.0)
            broker.set_quote(symbol, 10.0)
        result = pipeline.execute_cycle([_signal("F")])
        assert "max concurrent positions" in result.trades[0].reasons[0]

    def test_cycle_metrics(self, ledger, broker, store, journal, clock, alerts):
        metrics = MetricsRecorder(enabled=False)
        pipeline = _pipeline(ledger, broker, store, journal, clock, alerts, metrics=metrics)
        pipeline.execute_cycle([_signal()])

        stats = metrics.last_cycle()
        assert stats.signals == 1
        assert stats.executed == 1
        assert stats.status == "ok"

    def test_to_dict_is_serializable(self, pipeline):
        import json
        result = pipeline.execute_cycle([_signal()])
        payload = json.loads(json.dumps(result.to_dict()))
        assert payload["trades"][0]["symbol"] == "X"


class TestSignalsAgainstHeldPositions:

    @pytest.fixture(autouse=True)
    def held_long(self, broker, store):
        broker.add_position("X", 10, 50.0)
        broker.set_quote("X", 49.98, 50.0)
        store.store_levels("X", {"side": "long", "stop_loss": 48.5, "take_profit": 53.0,
                                 "entry_price": 50.0, "quantity": 10})

    def test_partial_sell_keeps_long_levels(self, pipeline, broker, store, clock):
        # equity 100k * 0.001 = $100 -> 2 shares
        first = pipeline.execute_cycle([_signal(side="sell", size=0.001)])
        (trade,) = first.executed
        assert trade.quantity == 2
        assert "existing levels kept" in trade.reasons[0]
        assert broker.positions["X"].qty == 8

        levels = store.get_levels("X")
        assert (levels.side, levels.stop_loss, levels.take_profit) == ("long", 48.5, 53.0)

        clock.advance(seconds=120)
        second = pipeline.execute_cycle([])
        assert second.sweep.exits_executed == []
        assert broker.positions["X"].qty == 8
        assert second.sweep.unprotected == []

    def test_sell_that_closes_removes_levels(self, pipeline, broker, store):
        broker.add_position("X", 2, 50.0)

        result = pipeline.execute_cycle([_signal(side="sell", size=0.001)])
        assert result.executed[0].reasons == ["closed held long position"]
        assert "X" not in broker.positions
        assert store.get_levels("X") is None

    def test_sell_that_flips_stores_short_levels(self, pipeline, broker, store):
        broker.add_position("X", 1, 50.0)

        result = pipeline.execute_cycle([_signal(side="sell", size=0.001)])
        (trade,) = result.executed
        assert trade.levels_stored
        assert broker.positions["X"].qty == -1

        levels = store.get_levels("X")
        assert levels.side == "short"
        assert levels.quantity == 1
        assert levels.stop_loss > 50.0 > levels.take_profit


class TestHistoryWrites:

    def test_unrecorded_trade_state_is_reported(self, pipeline, broker, journal, alerts, monkeypatch):
        broker.set_quote("X", 49.98, 50.0)
        monkeypatch.setattr(journal, "record_trade", lambda trade: False)

        (trade,) = pipeline.execute_cycle([_signal()]).trades
        assert trade.status == EXECUTED
        assert not trade.history_recorded
        assert "trade state not recorded" in trade.reasons
        assert trade.levels_stored
        assert any("Trade history not recorded" in a["text"] for a in alerts.sent)

    def test_unrecorded_signal_is_reported(self, pipeline, broker, journal, monkeypatch):
        broker.set_quote("X", 49.98, 50.0)
        monkeypatch.setattr(journal, "record_signal", lambda record: False)

        (trade,) = pipeline.execute_cycle([_signal()]).trades
        assert trade.status == EXECUTED
        assert trade.reasons == ["signal strength not recorded"]
        assert pipeline.execute_cycle([_signal()]).to_dict()["trades"][0]["status"] == SKIPPED
