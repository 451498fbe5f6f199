"""
Trading Cycle Pipeline

One invocation of the engine, start to finish:

1. Reset the ledger's per-invocation read cache
2. Exit sweep (frees capital before anything new is sized)
3. Market-open check
4. Read account and positions once
5. Daily-loss circuit breaker
6. For each signal, in order: size -> gate -> submit -> record -> protect

Nothing survives the invocation except what was written to the ledger.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging

from core.broker_alpaca import Account, BrokerPosition
from core.exceptions import BrokerError
from core.exit_monitor import EXECUTED, FAILED, SKIPPED, ExitMonitor, SweepResult
from core.models import PositionLevels, SignalStrengthRecord, TradeState, normalize_side
from core.position_store import PositionStateStore
from core.risk import RiskManager
from core.trade_gate import TradeGate
from core.trade_journal import TradeJournal
from infra.alerting import AlertService, AlertSeverity
from infra.clock import get_clock
from infra.ledger import Ledger
from infra.metrics import CycleStats
from strategy.signals import TradeSignal

logger = logging.getLogger(__name__)


@dataclass
class TradeResult:
    """Outcome for one candidate signal"""
    symbol: str
    side: str
    status: str
    quantity: int = 0
    price: Optional[float] = None
    order_id: Optional[str] = None
    reasons: List[str] = field(default_factory=list)
    checks: Dict[str, Any] = field(default_factory=dict)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    levels_stored: bool = False
    unprotected: bool = False
    history_recorded: bool = True


@dataclass
class CycleResult:
    """Result of a trading cycle execution"""
    success: bool
    started_at: datetime
    sweep: Optional[SweepResult] = None
    trades: List[TradeResult] = field(default_factory=list)
    no_trade_reason: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def executed(self) -> List[TradeResult]:
        return [t for t in self.trades if t.status == EXECUTED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "sweep": self.sweep.to_dict() if self.sweep else None,
            "trades": [
                {
                    "symbol": t.symbol,
                    "side": t.side,
                    "status": t.status,
                    "quantity": t.quantity,
                    "order_id": t.order_id,
                    "reasons": t.reasons,
                    "unprotected": t.unprotected,
                    "history_recorded": t.history_recorded,
                }
                for t in self.trades
            ],
            "no_trade_reason": self.no_trade_reason,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class TradingCyclePipeline:
    """
    Wires the exit monitor, risk sizing, trade gate and position store into
    one stateless pass.
    """

    def __init__(self,
                 ledger: Ledger,
                 broker,
                 store: PositionStateStore,
                 journal: TradeJournal,
                 gate: TradeGate,
                 exit_monitor: ExitMonitor,
                 risk: RiskManager,
                 clock=None,
                 metrics=None,
                 alerts: Optional[AlertService] = None,
                 dry_run: bool = False,
                 require_market_open: bool = True):
        self.ledger = ledger
        self.broker = broker
        self.store = store
        self.journal = journal
        self.gate = gate
        self.exit_monitor = exit_monitor
        self.risk = risk
        self.clock = clock or get_clock()
        self.metrics = metrics
        self.alerts = alerts
        self.dry_run = dry_run
        self.require_market_open = require_market_open

    def execute_cycle(self, signals: Optional[Sequence[TradeSignal]] = None) -> CycleResult:
        signals = list(signals or [])
        result = CycleResult(success=True, started_at=self.clock.now())

        self.ledger.begin_invocation()
        result.sweep = self.exit_monitor.sweep()

        if not signals:
            result.no_trade_reason = "no_signals"
            return self._finish(result, len(signals))

        if self.require_market_open:
            try:
                market_open = self.broker.is_market_open()
            except BrokerError as e:
                logger.error(f"Market clock unavailable: {e}")
                return self._skip_all(result, signals, "market_clock_unavailable")
            if not market_open:
                logger.info("Market closed; skipping new entries")
                return self._skip_all(result, signals, "market_closed")

        try:
            account = self.broker.get_account()
            positions = list(self.broker.get_positions())
        except BrokerError as e:
            logger.error(f"Account snapshot unavailable, no entries this cycle: {e}")
            result.error = str(e)
            return self._skip_all(result, signals, "account_unavailable")

        if self.risk.is_daily_loss_limit_exceeded(account):
            self._alert(AlertSeverity.WARNING, "Daily loss limit reached",
                        f"equity={account.equity} last_equity={account.last_equity}")
            return self._skip_all(result, signals, "daily_loss_limit")

        for signal in signals:
            try:
                trade = self._process_signal(signal, account, positions)
            except Exception as e:
                logger.exception(f"Signal processing failed for {signal.symbol}: {e}")
                trade = TradeResult(symbol=signal.symbol, side=signal.side, status=FAILED,
                                    reasons=[f"unexpected error: {e}"])
            result.trades.append(trade)

        if not result.executed:
            result.no_trade_reason = "no_signal_passed"
        return self._finish(result, len(signals))

    def _skip_all(self, result: CycleResult, signals: Sequence[TradeSignal], reason: str) -> CycleResult:
        result.no_trade_reason = reason
        result.trades = [
            TradeResult(symbol=s.symbol, side=s.side, status=SKIPPED, reasons=[reason])
            for s in signals
        ]
        return self._finish(result, len(signals))

    def _finish(self, result: CycleResult, signal_count: int) -> CycleResult:
        result.duration_seconds = (self.clock.now() - result.started_at).total_seconds()
        sweep_exits = len(result.sweep.exits_executed) if result.sweep else 0
        if self.metrics:
            self.metrics.observe_cycle(CycleStats(
                status="ok" if result.success else "error",
                signals=signal_count,
                approved=sum(1 for t in result.trades if t.status != SKIPPED),
                executed=len(result.executed),
                exits=sweep_exits,
                duration_seconds=result.duration_seconds,
            ))
        logger.info(
            f"Cycle done in {result.duration_seconds:.2f}s: exits={sweep_exits} "
            f"entries={len(result.executed)}/{signal_count} "
            f"reason={result.no_trade_reason or '-'}"
        )
        return result

    def _alert(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> None:
        if self.alerts is not None:
            self.alerts.notify(severity, title, message, context)

    def _process_signal(self, signal: TradeSignal, account: Account,
                        positions: List[BrokerPosition]) -> TradeResult:
        trade = TradeResult(symbol=signal.symbol, side=signal.side, status=SKIPPED,
                            price=signal.current_price)

        sizing = self.risk.adjust_signal(signal, account, positions)
        if not sizing.approved:
            trade.reasons.append(sizing.reason)
            return trade
        trade.quantity = signal.quantity
        trade.stop_loss = signal.stop_loss
        trade.take_profit = signal.take_profit

        validation = self.gate.validate(
            signal.symbol,
            signal.side,
            signal.quantity,
            signal.current_price,
            strategy=signal.strategy,
            signal_strength=signal.confidence,
            account=account,
            positions=positions,
        )
        trade.checks = validation.checks
        if not validation.can_trade:
            trade.reasons.extend(validation.reasons)
            return trade

        if self.dry_run:
            trade.reasons.append("dry_run")
            logger.info(f"DRY_RUN: would {signal.side} {signal.quantity} {signal.symbol}")
            return trade

        held = self._held_position(positions, signal.symbol)
        try:
            order = self.broker.submit_order(signal.symbol, signal.quantity, signal.side, "market", "day")
        except (BrokerError, ValueError) as e:
            logger.error(f"Entry order for {signal.symbol} failed: {e}")
            self._record_signal(signal, None, trade)
            trade.status = FAILED
            trade.reasons.append(f"order submission failed: {e}")
            return trade

        trade.order_id = order.id
        self._record_signal(signal, order.id, trade)
        recorded = self.journal.record_trade(TradeState(
            symbol=signal.symbol,
            side=signal.side,
            quantity=signal.quantity,
            price=signal.current_price,
            strategy=signal.strategy,
            order_id=order.id,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            status="submitted",
        ))
        if not recorded:
            self._history_not_recorded(trade, "trade state")

        target_side = normalize_side(signal.side)
        if held is not None and normalize_side(held.side) != target_side:
            self._protect_after_opposing_order(signal, held, order.id, trade)
        else:
            self._protect_entry(signal, order.id, trade)

        trade.status = EXECUTED
        if signal.side == "buy":
            account.cash -= signal.quantity * signal.current_price
        self._apply_local_fill(positions, held, signal)
        logger.info(f"Entered {signal.side} {signal.quantity} {signal.symbol} (order={order.id})")
        return trade

    @staticmethod
    def _held_position(positions: List[BrokerPosition], symbol: str) -> Optional[BrokerPosition]:
        """Copy of the held position as it stood before this order."""
        for position in positions:
            if position.symbol == symbol and position.abs_qty > 0:
                return replace(position)
        return None

    def _protect_entry(self, signal: TradeSignal, order_id: str, trade: TradeResult,
                       quantity: Optional[float] = None) -> None:
        trade.levels_stored = self.store.store_levels(signal.symbol, PositionLevels(
            symbol=signal.symbol,
            side=normalize_side(signal.side),
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            entry_price=signal.current_price,
            quantity=quantity if quantity is not None else signal.quantity,
            strategy=signal.strategy,
            order_id=order_id,
        ))
        if trade.levels_stored:
            return
        trade.unprotected = True
        trade.reasons.append("executed without stored exit levels")
        logger.error(f"{signal.symbol}: order {order_id} executed but exit levels were not stored")
        self._alert(
            AlertSeverity.CRITICAL,
            f"Unprotected entry: {signal.symbol}",
            f"Order {order_id} submitted but stop-loss/take-profit could not be stored",
            {"symbol": signal.symbol, "stop_loss": signal.stop_loss, "take_profit": signal.take_profit},
        )

    def _protect_after_opposing_order(self, signal: TradeSignal, held: BrokerPosition,
                                      order_id: str, trade: TradeResult) -> None:
        """Levels after an order against a held position: keep, drop or replace."""
        remaining = held.abs_qty - signal.quantity
        if remaining > 0:
            trade.reasons.append(f"reduced held {held.side} position; existing levels kept")
            logger.info(f"{signal.symbol}: {signal.side} {signal.quantity} reduces held "
                        f"{held.side} {held.abs_qty}; levels unchanged")
            return
        if remaining == 0:
            trade.reasons.append(f"closed held {held.side} position")
            if not self.store.remove_levels(signal.symbol):
                logger.warning(f"{signal.symbol}: position closed but levels not removed; "
                               f"reconciliation will retry")
            return
        logger.info(f"{signal.symbol}: {signal.side} {signal.quantity} flips held "
                    f"{held.side} {held.abs_qty}; storing levels for the new side")
        self._protect_entry(signal, order_id, trade, quantity=int(-remaining))

    @staticmethod
    def _apply_local_fill(positions: List[BrokerPosition], held: Optional[BrokerPosition],
                          signal: TradeSignal) -> None:
        signed = signal.quantity if signal.side == "buy" else -signal.quantity
        if held is not None:
            positions[:] = [p for p in positions if p.symbol != signal.symbol]
            signed += held.qty
        if signed == 0:
            return
        side = "long" if signed > 0 else "short"
        entry = signal.current_price
        if held is not None and normalize_side(held.side) == side:
            entry = held.avg_entry_price
        positions.append(BrokerPosition(
            symbol=signal.symbol,
            qty=signed,
            side=side,
            avg_entry_price=entry,
            current_price=signal.current_price,
            market_value=signed * signal.current_price,
        ))

    def _record_signal(self, signal: TradeSignal, order_id: Optional[str], trade: TradeResult) -> None:
        recorded = self.journal.record_signal(SignalStrengthRecord(
            symbol=signal.symbol,
            side=signal.side,
            signal_strength=signal.confidence,
            strategy=signal.strategy,
            order_id=order_id,
        ))
        if not recorded:
            self._history_not_recorded(trade, "signal strength")

    def _history_not_recorded(self, trade: TradeResult, what: str) -> None:
        trade.history_recorded = False
        trade.reasons.append(f"{what} not recorded")
        logger.error(f"{trade.symbol}: {what} row not recorded; cooldown and signal checks "
                     f"will not see order {trade.order_id}")
        self._alert(
            AlertSeverity.WARNING,
            f"Trade history not recorded: {trade.symbol}",
            f"{what} row for order {trade.order_id} could not be written",
            {"symbol": trade.symbol, "side": trade.side},
        )
