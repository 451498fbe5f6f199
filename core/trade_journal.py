"""
Core: Trade Journal

Append-mostly audit tables the trade gate reads back:
- TradeState: every submitted order (entries and exits), for cooldowns
- SignalStrength: every signal that reached submission, for re-entry gating

Reads fail open (None / []) and writes return False on ledger failure.
"""

import logging
from typing import List, Optional

from core.models import SignalStrengthRecord, TradeState
from infra.clock import get_clock
from infra.ledger import SIGNAL_STRENGTH, TRADE_STATE, Ledger, LedgerError
from infra.symbols import normalize_symbol

logger = logging.getLogger(__name__)


class TradeJournal:

    def __init__(self, ledger: Ledger, clock=None, metrics=None):
        self.ledger = ledger
        self.clock = clock or get_clock()
        self.metrics = metrics

    def _ledger_failed(self, operation: str, symbol: str, error: Exception) -> None:
        logger.error(f"Ledger {operation} failed for {symbol}: {error}")
        if self.metrics:
            self.metrics.record_ledger_error(operation)

    def record_trade(self, trade: TradeState) -> bool:
        if trade.timestamp is None:
            trade.timestamp = self.clock.now()
        try:
            self.ledger.append(TRADE_STATE.name, trade.to_row())
        except LedgerError as e:
            self._ledger_failed("trade_append", trade.symbol, e)
            return False
        logger.debug(f"Recorded {trade.side} trade for {trade.symbol} (order={trade.order_id})")
        return True

    def last_trade(self, symbol: str) -> Optional[TradeState]:
        symbol = normalize_symbol(symbol)
        try:
            row = self.ledger.get(TRADE_STATE.name, symbol)
        except LedgerError as e:
            self._ledger_failed("trade_read", symbol, e)
            return None
        if row is None:
            return None
        try:
            return TradeState.from_row(row)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable trade row for {symbol}: {e}")
            return None

    def recent_trades(self, limit: int = 20) -> List[TradeState]:
        """Newest-first trades across all symbols."""
        try:
            rows = self.ledger.scan_all(TRADE_STATE.name)
        except LedgerError as e:
            self._ledger_failed("trade_scan", "*", e)
            return []
        trades = []
        for row in reversed(rows):
            try:
                trades.append(TradeState.from_row(row))
            except (TypeError, ValueError):
                continue
            if len(trades) >= limit:
                break
        return trades

    def record_signal(self, record: SignalStrengthRecord) -> bool:
        if record.timestamp is None:
            record.timestamp = self.clock.now()
        try:
            self.ledger.append(SIGNAL_STRENGTH.name, record.to_row())
        except LedgerError as e:
            self._ledger_failed("signal_append", record.symbol, e)
            return False
        return True

    def last_signal(self, symbol: str, side: str) -> Optional[SignalStrengthRecord]:
        """Latest recorded signal for (symbol, order side)."""
        symbol = normalize_symbol(symbol)
        try:
            row = self.ledger.get(SIGNAL_STRENGTH.name, symbol, match={"side": side.lower()})
        except LedgerError as e:
            self._ledger_failed("signal_read", symbol, e)
            return None
        if row is None:
            return None
        try:
            return SignalStrengthRecord.from_row(row)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable signal row for {symbol}: {e}")
            return None
