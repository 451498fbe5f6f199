"""
Core: Exit Monitor

Runs at the start of every invocation, before any new entry is considered:

1. Pull live positions from the broker (the broker decides what is held)
2. Load each position's stored exit levels (expired levels vanish here)
3. Compare the live quote against stop-loss/take-profit with a buffer
4. Flatten triggered positions with a market order, retrying a fixed number
   of times; remove the levels only once the order is accepted
5. Reconcile: delete stored levels for symbols the broker no longer holds

Positions are processed one at a time. A failure on one position is
recorded in the sweep result and never stops the others.

Trigger rules (buffer b, long uses the bid, short uses the ask):
- long  stop-loss:   price <= stop_loss * (1 - b)
- long  take-profit: price >= take_profit * (1 - b)
- short stop-loss:   price >= stop_loss * (1 + b)
- short take-profit: price <= take_profit * (1 + b)

Stops must be breached by the buffer before firing so a quote hovering on
the level does not flatten the position; targets fire within the buffer.
Both stop thresholds are the level scaled by the buffer (`sl * (1 - b)` for
longs, `sl * (1 + b)` for shorts), never `sl * (1 + b)` for longs or
`sl / (1 + b)` for shorts, so a long at bid 97.05 with SL 97 does not exit.

Stored levels whose side disagrees with the broker's position are stale
(left behind by a reversal); they are deleted and the position is reported
as unprotected instead of being evaluated.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from core.broker_alpaca import BrokerPosition, Order
from core.exceptions import BrokerError
from core.models import LONG, PositionLevels, TradeState, exit_order_side, normalize_side
from core.position_store import PositionStateStore
from core.trade_journal import TradeJournal
from infra.alerting import AlertService, AlertSeverity
from infra.clock import get_clock
from infra.ledger import LedgerError

logger = logging.getLogger(__name__)

EXECUTED = "executed"
SKIPPED = "skipped"
FAILED = "failed"

STOP_LOSS = "stop_loss"
TAKE_PROFIT = "take_profit"


@dataclass
class ExitResult:
    """Outcome for one held position in a sweep"""
    symbol: str
    status: str
    reason: str = ""
    trigger: Optional[str] = None
    side: Optional[str] = None
    quantity: float = 0.0
    market_price: Optional[float] = None
    trigger_price: Optional[float] = None
    order_id: Optional[str] = None
    fill_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    attempts: int = 0
    levels_removed: bool = False
    history_recorded: bool = True


@dataclass
class SweepResult:
    """Aggregate outcome of one monitoring sweep"""
    started_at: datetime
    status: str = EXECUTED
    positions_checked: int = 0
    results: List[ExitResult] = field(default_factory=list)
    unprotected: List[str] = field(default_factory=list)
    reprotected: List[str] = field(default_factory=list)
    orphaned_symbols: List[str] = field(default_factory=list)
    orphans_cleaned: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def exits_executed(self) -> List[ExitResult]:
        return [r for r in self.results if r.status == EXECUTED]

    @property
    def exits_failed(self) -> List[ExitResult]:
        return [r for r in self.results if r.status == FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "positions_checked": self.positions_checked,
            "exits_executed": len(self.exits_executed),
            "exits_failed": len(self.exits_failed),
            "unprotected": list(self.unprotected),
            "reprotected": list(self.reprotected),
            "orphans_cleaned": self.orphans_cleaned,
            "errors": list(self.errors),
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class EmergencyStopResult:
    status: str
    reason: str = ""
    closed: List[Dict[str, Any]] = field(default_factory=list)
    levels_cleared: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


def evaluate_trigger(levels: PositionLevels, side: str, bid: float, ask: float,
                     buffer: float) -> Optional[Tuple[str, float, float]]:
    """
    Check stored levels against the live quote.

    Returns:
        (trigger, market_price, threshold) when a level is crossed, else None.
        Stop-loss wins when both are crossed.
    """
    if normalize_side(side) == LONG:
        price = bid
        if levels.stop_loss is not None:
            threshold = levels.stop_loss * (1 - buffer)
            if price <= threshold:
                return STOP_LOSS, price, threshold
        if levels.take_profit is not None:
            threshold = levels.take_profit * (1 - buffer)
            if price >= threshold:
                return TAKE_PROFIT, price, threshold
        return None

    price = ask
    if levels.stop_loss is not None:
        threshold = levels.stop_loss * (1 + buffer)
        if price >= threshold:
            return STOP_LOSS, price, threshold
    if levels.take_profit is not None:
        threshold = levels.take_profit * (1 + buffer)
        if price <= threshold:
            return TAKE_PROFIT, price, threshold
    return None


def realized_pnl(side: str, entry_price: Optional[float], fill_price: Optional[float],
                 quantity: float) -> Optional[float]:
    if entry_price is None or fill_price is None or entry_price <= 0:
        return None
    direction = 1.0 if normalize_side(side) == LONG else -1.0
    return round((fill_price - entry_price) * quantity * direction, 6)


class ExitMonitor:
    """
    Stop-loss/take-profit enforcement over broker-held positions.

    Configuration from policy.yaml (`exits` section):
    - price_buffer: trigger buffer fraction (default 0.001)
    - max_retries: exit submission attempts (default 3)
    - retry_delay_seconds: fixed delay between attempts (default 1.0)
    - fill_poll_delay_seconds: wait before the single fill poll (default 1.0)
    - emergency_stop_enabled: allow operator flatten-all (default True)
    - reprotect_unprotected: rebuild levels for held positions that have
      none, from the average entry and the pct below (default False)
    - reprotect_stop_loss_pct / reprotect_take_profit_pct (0.03 / 0.06)
    """

    def __init__(
        self,
        config: Dict,
        broker,
        store: PositionStateStore,
        journal: Optional[TradeJournal] = None,
        clock=None,
        metrics=None,
        alerts: Optional[AlertService] = None,
        dry_run: bool = False,
    ):
        config = config or {}
        self.broker = broker
        self.store = store
        self.journal = journal
        self.clock = clock or get_clock()
        self.metrics = metrics
        self.alerts = alerts
        self.dry_run = dry_run

        self.price_buffer = float(config.get("price_buffer", 0.001))
        self.max_retries = int(config.get("max_retries", 3))
        self.retry_delay_seconds = float(config.get("retry_delay_seconds", 1.0))
        self.fill_poll_delay_seconds = float(config.get("fill_poll_delay_seconds", 1.0))
        self.emergency_stop_enabled = bool(config.get("emergency_stop_enabled", True))
        self.reprotect_unprotected = bool(config.get("reprotect_unprotected", False))
        self.reprotect_stop_loss_pct = float(config.get("reprotect_stop_loss_pct", 0.03))
        self.reprotect_take_profit_pct = float(config.get("reprotect_take_profit_pct", 0.06))

        if not 0 <= self.price_buffer < 1:
            raise ValueError(f"exits.price_buffer must be in [0, 1), got {self.price_buffer}")
        if self.max_retries < 1:
            raise ValueError(f"exits.max_retries must be >= 1, got {self.max_retries}")

        logger.info(
            f"Initialized ExitMonitor: buffer={self.price_buffer:.4f}, retries={self.max_retries}, "
            f"retry_delay={self.retry_delay_seconds}s, dry_run={dry_run}"
        )

    def _alert(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> None:
        if self.alerts is not None:
            self.alerts.notify(severity, title, message, context)

    # ===== Sweep =====

    def sweep(self) -> SweepResult:
        """Check every held position, fire exits, then reconcile orphans."""
        result = SweepResult(started_at=self.clock.now())

        try:
            positions = self.broker.get_positions()
        except BrokerError as e:
            logger.error(f"Exit sweep aborted: positions unavailable: {e}")
            result.status = FAILED
            result.errors.append({"symbol": "*", "stage": "positions", "error": str(e)})
            self._alert(AlertSeverity.CRITICAL, "Exit sweep aborted", f"Broker positions unavailable: {e}")
            return self._finish(result)

        held = [p for p in positions if p.abs_qty > 0]
        result.positions_checked = len(held)
        logger.info(f"Exit sweep: {len(held)} held position(s)")

        for position in held:
            try:
                outcome = self._process_position(position, result)
            except Exception as e:
                logger.exception(f"Exit check failed for {position.symbol}: {e}")
                result.errors.append({"symbol": position.symbol, "stage": "evaluate", "error": str(e)})
                continue
            result.results.append(outcome)

        self._reconcile({p.symbol for p in held}, result)

        if self.metrics:
            self.metrics.record_sweep_coverage(len(held), len(result.unprotected))
        return self._finish(result)

    def _finish(self, result: SweepResult) -> SweepResult:
        result.duration_seconds = (self.clock.now() - result.started_at).total_seconds()
        logger.info(
            f"Exit sweep done: checked={result.positions_checked} "
            f"executed={len(result.exits_executed)} failed={len(result.exits_failed)} "
            f"unprotected={len(result.unprotected)} orphans_cleaned={result.orphans_cleaned} "
            f"errors={len(result.errors)}"
        )
        return result

    def _process_position(self, position: BrokerPosition, sweep: SweepResult) -> ExitResult:
        symbol = position.symbol
        side = normalize_side(position.side)
        levels = self.store.get_levels(symbol)

        if levels is not None and levels.side != side:
            logger.warning(
                f"{symbol}: stored {levels.side} levels do not match broker {side} position; "
                f"discarding stale levels"
            )
            if not self.store.remove_levels(symbol):
                sweep.errors.append({"symbol": symbol, "stage": "stale_levels", "error": "delete failed"})
            levels = None

        if levels is None:
            return self._handle_unprotected(position, side, sweep)

        quote = self.broker.get_quote(symbol)
        hit = evaluate_trigger(levels, side, quote.bid, quote.ask, self.price_buffer)
        if hit is None:
            logger.debug(
                f"{symbol}: no trigger (bid={quote.bid} ask={quote.ask} "
                f"SL={levels.stop_loss} TP={levels.take_profit})"
            )
            return ExitResult(
                symbol=symbol, status=SKIPPED, side=side, quantity=position.abs_qty,
                market_price=quote.bid if side == LONG else quote.ask, reason="no trigger",
            )

        trigger, market_price, threshold = hit
        logger.warning(
            f"{symbol}: {trigger} triggered ({side}, price={market_price}, threshold={threshold:.4f})"
        )
        return self._execute_exit(position, side, levels, trigger, market_price, threshold)

    def _handle_unprotected(self, position: BrokerPosition, side: str, sweep: SweepResult) -> ExitResult:
        symbol = position.symbol
        if self.reprotect_unprotected and self._reprotect(position):
            sweep.reprotected.append(symbol)
            return ExitResult(symbol=symbol, status=SKIPPED, side=side,
                              quantity=position.abs_qty, reason="levels rebuilt")
        sweep.unprotected.append(symbol)
        logger.warning(f"{symbol}: held {position.qty} with no live exit levels (unprotected)")
        return ExitResult(symbol=symbol, status=SKIPPED, side=side,
                          quantity=position.abs_qty, reason="no stored levels")

    def _submit_with_retry(self, symbol: str, quantity: float, side: str) -> Tuple[Optional[Order], int, str]:
        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                order = self.broker.submit_order(symbol, quantity, side, "market", "day")
                return order, attempt, ""
            except (BrokerError, ValueError) as e:
                last_error = str(e)
                logger.warning(f"Exit order for {symbol} failed (attempt {attempt}/{self.max_retries}): {e}")
            if attempt < self.max_retries:
                self.clock.sleep(self.retry_delay_seconds)
        return None, self.max_retries, last_error

    def _poll_fill_price(self, order: Order) -> Optional[float]:
        if order.is_filled:
            return order.filled_avg_price
        self.clock.sleep(self.fill_poll_delay_seconds)
        try:
            polled = self.broker.get_order(order.id)
        except BrokerError as e:
            logger.warning(f"Fill poll failed for order {order.id}: {e}")
            return None
        return polled.filled_avg_price if polled.is_filled else None

    def _execute_exit(self, position: BrokerPosition, side: str, levels: PositionLevels,
                      trigger: str, market_price: float, threshold: float) -> ExitResult:
        symbol = position.symbol
        quantity = position.abs_qty
        exit_side = exit_order_side(side)
        result = ExitResult(
            symbol=symbol, status=FAILED, trigger=trigger, side=side, quantity=quantity,
            market_price=market_price, trigger_price=threshold,
        )

        if self.dry_run:
            result.status = SKIPPED
            result.reason = "dry_run"
            logger.info(f"DRY_RUN: would {exit_side} {quantity} {symbol} ({trigger})")
            if self.metrics:
                self.metrics.record_exit(trigger, SKIPPED)
            return result

        order, attempts, error = self._submit_with_retry(symbol, quantity, exit_side)
        result.attempts = attempts
        if order is None:
            result.reason = f"exit order failed after {attempts} attempt(s): {error}"
            logger.error(f"{symbol}: {result.reason}; levels kept for next sweep")
            if self.metrics:
                self.metrics.record_exit(trigger, FAILED)
            self._alert(
                AlertSeverity.CRITICAL,
                f"Exit failed: {symbol}",
                result.reason,
                {"symbol": symbol, "trigger": trigger, "quantity": quantity},
            )
            return result

        result.order_id = order.id
        result.fill_price = self._poll_fill_price(order)
        entry_price = position.avg_entry_price or levels.entry_price
        result.realized_pnl = realized_pnl(side, entry_price, result.fill_price, quantity)
        result.levels_removed = self.store.remove_levels(symbol)
        if not result.levels_removed:
            logger.warning(f"{symbol}: exit submitted but levels not removed; reconciliation will retry")

        if self.journal is not None:
            result.history_recorded = self.journal.record_trade(TradeState(
                symbol=symbol,
                side=exit_side,
                quantity=quantity,
                price=result.fill_price or market_price,
                strategy=f"exit_{trigger}",
                order_id=order.id,
                stop_loss=levels.stop_loss,
                take_profit=levels.take_profit,
                status=f"exit_{trigger}",
            ))
            if not result.history_recorded:
                logger.error(f"{symbol}: exit {order.id} not recorded; re-entry cooldown will not apply")

        result.status = EXECUTED
        result.reason = trigger
        if self.metrics:
            self.metrics.record_exit(trigger, EXECUTED)
        pnl_text = f"{result.realized_pnl:+.2f}" if result.realized_pnl is not None else "unknown"
        logger.info(
            f"{symbol}: exit {exit_side} {quantity} submitted (order={order.id}, "
            f"fill={result.fill_price}, pnl={pnl_text})"
        )
        return result

    def _reprotect(self, position: BrokerPosition) -> bool:
        entry = position.avg_entry_price
        if entry <= 0:
            return False
        side = normalize_side(position.side)
        if side == LONG:
            stop_loss = entry * (1 - self.reprotect_stop_loss_pct)
            take_profit = entry * (1 + self.reprotect_take_profit_pct)
        else:
            stop_loss = entry * (1 + self.reprotect_stop_loss_pct)
            take_profit = entry * (1 - self.reprotect_take_profit_pct)
        levels = PositionLevels(
            symbol=position.symbol,
            side=side,
            stop_loss=round(stop_loss, 4),
            take_profit=round(take_profit, 4),
            entry_price=entry,
            quantity=int(position.abs_qty),
            strategy="reprotect",
        )
        stored = self.store.store_levels(position.symbol, levels)
        if stored:
            logger.warning(
                f"{position.symbol}: rebuilt exit levels from entry {entry} "
                f"(SL={levels.stop_loss}, TP={levels.take_profit})"
            )
        return stored

    def _reconcile(self, held_symbols: set, result: SweepResult) -> None:
        try:
            stored = self.store.list_symbols()
        except LedgerError as e:
            logger.error(f"Reconciliation skipped: stored levels unavailable: {e}")
            result.errors.append({"symbol": "*", "stage": "reconcile", "error": str(e)})
            return

        for symbol in stored:
            if symbol in held_symbols:
                continue
            result.orphaned_symbols.append(symbol)
            if self.store.remove_levels(symbol):
                result.orphans_cleaned += 1
                logger.info(f"Reconciled orphaned levels for {symbol} (no longer held)")
            else:
                result.errors.append({"symbol": symbol, "stage": "reconcile", "error": "delete failed"})

        if self.metrics:
            self.metrics.record_orphans_cleaned(result.orphans_cleaned)

    # ===== Operator actions =====

    def emergency_stop(self) -> EmergencyStopResult:
        """
        Flatten every held position.

        Stored levels are cleared only for symbols that closed or are no
        longer held; a symbol whose close failed keeps its protection. In
        DRY_RUN nothing is submitted and the ledger is left untouched.
        """
        if not self.emergency_stop_enabled:
            logger.warning("Emergency stop requested but disabled by config")
            return EmergencyStopResult(status=SKIPPED, reason="emergency stop disabled")

        logger.critical("EMERGENCY STOP: flattening all positions")
        result = EmergencyStopResult(status=EXECUTED)

        try:
            positions = self.broker.get_positions()
        except BrokerError as e:
            result.status = FAILED
            result.reason = f"positions unavailable: {e}"
            result.errors.append({"symbol": "*", "error": str(e)})
            self._alert(AlertSeverity.CRITICAL, "Emergency stop failed", result.reason)
            return result

        held = [p for p in positions if p.abs_qty > 0]
        if self.dry_run:
            for position in held:
                logger.info(f"DRY_RUN: would {exit_order_side(position.side)} {position.abs_qty} {position.symbol}")
            result.status = SKIPPED
            result.reason = "dry_run"
            return result

        still_held = set()
        for position in held:
            exit_side = exit_order_side(position.side)
            try:
                order = self.broker.submit_order(position.symbol, position.abs_qty, exit_side, "market", "day")
            except (BrokerError, ValueError) as e:
                logger.error(f"Emergency close failed for {position.symbol}: {e}; levels kept")
                result.errors.append({"symbol": position.symbol, "error": str(e)})
                still_held.add(position.symbol)
                continue
            result.closed.append({"symbol": position.symbol, "order_id": order.id,
                                  "quantity": position.abs_qty, "side": exit_side})

        try:
            stored = self.store.list_symbols()
        except LedgerError as e:
            stored = []
            result.errors.append({"symbol": "*", "error": f"levels unavailable: {e}"})
        for symbol in stored:
            if symbol in still_held:
                continue
            if self.store.remove_levels(symbol):
                result.levels_cleared += 1
            else:
                result.errors.append({"symbol": symbol, "error": "levels delete failed"})

        if still_held and not result.closed:
            result.status = FAILED
        self._alert(
            AlertSeverity.CRITICAL,
            "Emergency stop executed",
            f"closed={len(result.closed)} errors={len(result.errors)} levels_cleared={result.levels_cleared}",
        )
        return result

    def monitoring_status(self) -> Dict[str, Any]:
        """Coverage snapshot: which held positions carry live levels."""
        status: Dict[str, Any] = {
            "config": {
                "price_buffer": self.price_buffer,
                "max_retries": self.max_retries,
                "retry_delay_seconds": self.retry_delay_seconds,
                "emergency_stop_enabled": self.emergency_stop_enabled,
                "reprotect_unprotected": self.reprotect_unprotected,
            },
            "store": self.store.stats(),
        }
        try:
            positions = self.broker.get_positions()
        except BrokerError as e:
            status["error"] = f"positions unavailable: {e}"
            return status

        protected, unprotected = [], []
        for position in positions:
            levels = self.store.get_levels(position.symbol)
            if levels is None:
                unprotected.append(position.symbol)
            else:
                protected.append({
                    "symbol": position.symbol,
                    "side": levels.side,
                    "stop_loss": levels.stop_loss,
                    "take_profit": levels.take_profit,
                    "expires_at": levels.expires_at.isoformat() if levels.expires_at else None,
                })
        status["positions"] = len(positions)
        status["protected"] = protected
        status["unprotected"] = unprotected
        return status
