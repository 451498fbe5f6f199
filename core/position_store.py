"""
Core: Position State Store

Stores the stop-loss/take-profit levels that protect each open position.
The ledger is the only memory the engine has between invocations, so every
read goes to it (or to this invocation's read-through cache) and every
write is an idempotent overwrite-by-symbol or delete.

Failure policy:
- Read failures are logged and reported as "no levels" so a ledger outage
  never blocks execution.
- Write failures return False; the caller surfaces the trade as
  executed-but-unprotected.
- Levels with neither stop-loss nor take-profit are rejected before they
  reach the ledger.
"""

import logging
from collections import Counter
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from core.models import PositionLevels
from infra.clock import get_clock
from infra.ledger import POSITION_LEVELS, Ledger, LedgerError
from infra.symbols import normalize_symbol

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24.0

_UPDATABLE_FIELDS = (
    "stop_loss", "take_profit", "entry_price", "side", "quantity", "strategy", "order_id",
)


class PositionStateStore:
    """Exit-level persistence keyed by symbol (one live record per symbol)."""

    def __init__(self, ledger: Ledger, clock=None, ttl_hours: float = DEFAULT_TTL_HOURS,
                 metrics=None):
        if ttl_hours <= 0:
            raise ValueError(f"ttl_hours must be positive, got {ttl_hours}")
        self.ledger = ledger
        self.clock = clock or get_clock()
        self.ttl = timedelta(hours=ttl_hours)
        self.metrics = metrics
        self.table = POSITION_LEVELS.name

        logger.info(f"Initialized PositionStateStore (ttl={ttl_hours}h)")

    def _ledger_failed(self, operation: str, symbol: str, error: Exception) -> None:
        logger.error(f"Ledger {operation} failed for {symbol}: {error}")
        if self.metrics:
            self.metrics.record_ledger_error(f"levels_{operation}")

    def store_levels(self, symbol: str, levels: Union[PositionLevels, Mapping[str, Any]]) -> bool:
        """
        Persist exit levels for `symbol`, overwriting any existing record.

        Stamps created_at=now and expires_at=now+TTL.

        Returns:
            True when written; False for invalid levels or ledger failure
        """
        symbol = normalize_symbol(symbol)
        try:
            record = levels if isinstance(levels, PositionLevels) else PositionLevels(
                **{**dict(levels), "symbol": symbol}
            )
        except (TypeError, ValueError) as e:
            logger.error(f"Rejected malformed levels for {symbol}: {e}")
            return False

        if not record.has_levels():
            logger.error(f"Rejected levels for {symbol}: neither stop_loss nor take_profit provided")
            return False

        now = self.clock.now()
        record = replace(record, symbol=symbol, created_at=now, expires_at=now + self.ttl)

        try:
            self.ledger.put(self.table, symbol, record.to_row())
        except LedgerError as e:
            self._ledger_failed("store", symbol, e)
            return False

        logger.info(
            f"Stored levels for {symbol}: side={record.side} SL={record.stop_loss} "
            f"TP={record.take_profit} entry={record.entry_price} qty={record.quantity}"
        )
        return True

    def get_levels(self, symbol: str) -> Optional[PositionLevels]:
        """
        Most recent live levels for `symbol`, or None.

        An expired record is treated as absent and deleted on the way out.
        """
        symbol = normalize_symbol(symbol)
        try:
            row = self.ledger.get(self.table, symbol)
        except LedgerError as e:
            self._ledger_failed("read", symbol, e)
            return None
        if row is None:
            return None

        try:
            record = PositionLevels.from_row(row)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable levels row for {symbol}: {e}")
            return None

        if record.is_expired(self.clock.now()):
            logger.info(f"Levels for {symbol} expired at {record.expires_at.isoformat()}, removing")
            self.remove_levels(symbol)
            return None

        return record

    def update_levels(self, symbol: str, updates: Mapping[str, Any]) -> bool:
        """
        Merge `updates` into the live record, keeping its timestamps.

        Returns False if there is no live record, the result would carry
        neither level, or the ledger write fails.
        """
        symbol = normalize_symbol(symbol)
        unknown = set(updates) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        current = self.get_levels(symbol)
        if current is None:
            logger.warning(f"No live levels to update for {symbol}")
            return False

        try:
            updated = replace(current, **dict(updates))
        except (TypeError, ValueError) as e:
            logger.error(f"Rejected level update for {symbol}: {e}")
            return False
        if not updated.has_levels():
            logger.error(f"Rejected level update for {symbol}: would clear both stop_loss and take_profit")
            return False

        try:
            self.ledger.put(self.table, symbol, updated.to_row())
        except LedgerError as e:
            self._ledger_failed("update", symbol, e)
            return False

        logger.info(f"Updated levels for {symbol}: {dict(updates)}")
        return True

    def remove_levels(self, symbol: str) -> bool:
        """Delete levels for `symbol`. True even if none existed."""
        symbol = normalize_symbol(symbol)
        try:
            removed = self.ledger.delete(self.table, symbol)
        except LedgerError as e:
            self._ledger_failed("delete", symbol, e)
            return False
        if removed:
            logger.info(f"Removed levels for {symbol}")
        return True

    def _scan(self) -> List[PositionLevels]:
        records = []
        for row in self.ledger.scan_all(self.table):
            try:
                records.append(PositionLevels.from_row(row))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable levels row {row.get('symbol')}: {e}")
        return records

    def list_symbols(self) -> List[str]:
        """
        Every symbol with a stored row, expired ones included.

        Raises:
            LedgerError: callers reconcile against this list and must not
                mistake an outage for an empty table
        """
        seen: Dict[str, None] = {}
        for record in self._scan():
            if record.symbol:
                seen.setdefault(record.symbol, None)
        return list(seen)

    def stored_count(self) -> int:
        try:
            return len(self.list_symbols())
        except LedgerError as e:
            self._ledger_failed("scan", "*", e)
            return 0

    def stats(self) -> Dict[str, Any]:
        """Coverage/staleness aggregate over every stored record."""
        try:
            records = self._scan()
        except LedgerError as e:
            self._ledger_failed("scan", "*", e)
            return {"total": 0, "valid": 0, "expired": 0, "by_side": {}, "by_strategy": {}, "error": str(e)}

        now = self.clock.now()
        expired = [r for r in records if r.is_expired(now)]
        by_side = Counter(r.side for r in records)
        by_strategy = Counter(r.strategy or "unknown" for r in records)
        return {
            "total": len(records),
            "valid": len(records) - len(expired),
            "expired": len(expired),
            "by_side": dict(by_side),
            "by_strategy": dict(by_strategy),
        }

    def cleanup_expired(self) -> int:
        """Delete every expired record. Returns how many were removed."""
        try:
            records = self._scan()
        except LedgerError as e:
            self._ledger_failed("scan", "*", e)
            return 0

        now = self.clock.now()
        cleaned = 0
        for record in records:
            if record.is_expired(now) and self.remove_levels(record.symbol):
                cleaned += 1
        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired level record(s)")
        return cleaned

    def bulk_store(self, records: Iterable[PositionLevels]) -> Dict[str, Any]:
        """Store many records; failures are collected, not raised."""
        result: Dict[str, Any] = {"successful": 0, "failed": 0, "errors": []}
        for record in records:
            if self.store_levels(record.symbol, record):
                result["successful"] += 1
            else:
                result["failed"] += 1
                result["errors"].append(record.symbol)
        return result

    def export_all(self) -> List[Dict[str, Any]]:
        """Live (non-expired) records as plain dicts, for backups and status output."""
        try:
            records = self._scan()
        except LedgerError as e:
            self._ledger_failed("scan", "*", e)
            return []
        now = self.clock.now()
        return [r.to_dict() for r in records if not r.is_expired(now)]
