"""
Core: Trade Validation Gate

Decides whether a new entry may be submitted. Checks run in order and stop
at the first rejection:

1. Cooldown: per-symbol minimum spacing since the last recorded trade
2. Signal strength: adding to a held position in the same direction needs
   a materially stronger signal than the last one recorded for that
   symbol/side; opposing or reducing signals skip this check
3. Notional/risk: absolute ceiling, fraction of equity, available cash (buys)
4. Pending orders: no new order while one is still working at the broker

Rejections are results, never exceptions. Missing data (ledger or broker
read failures) lets the check pass and is noted in `checks`.

Configuration from policy.yaml (`gate` section):
- min_seconds_between_trades: per-symbol spacing (default 60s)
- signal_improvement_threshold: required relative improvement (default 0.30)
- max_position_value_usd: absolute notional ceiling (default $25,000)
- max_position_pct_of_equity: notional ceiling as a fraction of equity (default 0.10)
- check_pending_orders: enable check 4 (default True)
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
import logging

from core.broker_alpaca import Account, BrokerPosition
from core.exceptions import BrokerError
from core.models import normalize_side, order_side
from core.trade_journal import TradeJournal
from infra.clock import get_clock
from infra.symbols import normalize_symbol

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Outcome of a gate evaluation"""
    can_trade: bool
    reasons: List[str] = None
    checks: Dict[str, Any] = None
    rejected_by: str = ""

    def __post_init__(self):
        if self.reasons is None:
            self.reasons = []
        if self.checks is None:
            self.checks = {}


class TradeGate:
    """
    Pre-trade validation against ledger history and live broker data.

    Account and positions can be passed in (read once per invocation by the
    pipeline); otherwise they are fetched from the broker on demand.
    """

    def __init__(self, config: Dict, journal: TradeJournal, broker, clock=None, metrics=None):
        self.config = config or {}
        self._validate_config(self.config)

        self.journal = journal
        self.broker = broker
        self.clock = clock or get_clock()
        self.metrics = metrics

        self.min_seconds_between_trades = float(self.config.get("min_seconds_between_trades", 60))
        self.signal_improvement_threshold = float(self.config.get("signal_improvement_threshold", 0.30))
        self.max_position_value_usd = float(self.config.get("max_position_value_usd", 25000.0))
        self.max_position_pct_of_equity = float(self.config.get("max_position_pct_of_equity", 0.10))
        self.check_pending_orders = bool(self.config.get("check_pending_orders", True))

        logger.info(
            f"Initialized TradeGate: cooldown={self.min_seconds_between_trades:.0f}s, "
            f"signal_improvement={self.signal_improvement_threshold:.0%}, "
            f"max_notional=${self.max_position_value_usd:,.0f}, "
            f"max_pct_equity={self.max_position_pct_of_equity:.1%}"
        )

    @staticmethod
    def _validate_config(config: Dict) -> None:
        for key in ("min_seconds_between_trades", "signal_improvement_threshold",
                    "max_position_value_usd", "max_position_pct_of_equity"):
            value = config.get(key)
            if value is not None and float(value) < 0:
                raise ValueError(f"gate.{key} must be non-negative, got {value}")
        pct = config.get("max_position_pct_of_equity")
        if pct is not None and float(pct) > 1:
            raise ValueError(f"gate.max_position_pct_of_equity is a fraction (0-1), got {pct}")

    def validate(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: float,
        strategy: str = "",
        signal_strength: Optional[float] = None,
        account: Optional[Account] = None,
        positions: Optional[Sequence[BrokerPosition]] = None,
    ) -> ValidationResult:
        """
        Run every check in order, short-circuiting on the first rejection.

        Args:
            side: buy/sell (long/short accepted)
            account: current account snapshot, fetched if None
            positions: current broker positions, fetched if None
        """
        symbol = normalize_symbol(symbol)
        side = order_side(side)
        result = ValidationResult(can_trade=True)

        if quantity <= 0 or price <= 0:
            return self._reject(
                result, "input", f"Invalid order size for {symbol}: qty={quantity} price={price}"
            )

        checks = (
            ("cooldown", lambda: self._check_cooldown(symbol, result)),
            ("signal_strength", lambda: self._check_signal_strength(
                symbol, side, signal_strength, positions, result)),
            ("risk", lambda: self._check_risk(symbol, side, quantity, price, account, result)),
            ("pending_orders", lambda: self._check_pending_orders(symbol, result)),
        )
        for name, check in checks:
            reason = check()
            if reason:
                return self._reject(result, name, reason)

        if self.metrics:
            self.metrics.record_gate_decision(True)
        logger.info(
            f"Gate approved {side} {quantity} {symbol} @ {price} ({strategy or 'unknown'}); "
            f"binding={result.checks.get('risk', {}).get('binding_limit')}"
        )
        return result

    def _reject(self, result: ValidationResult, check: str, reason: str) -> ValidationResult:
        result.can_trade = False
        result.rejected_by = check
        result.reasons.append(reason)
        if self.metrics:
            self.metrics.record_gate_decision(False, check)
        logger.info(f"Gate rejected ({check}): {reason}")
        return result

    def _check_cooldown(self, symbol: str, result: ValidationResult) -> Optional[str]:
        last = self.journal.last_trade(symbol)
        if last is None or last.timestamp is None:
            result.checks["cooldown"] = {"last_trade": None}
            return None

        elapsed = (self.clock.now() - last.timestamp).total_seconds()
        remaining = self.min_seconds_between_trades - elapsed
        result.checks["cooldown"] = {
            "last_trade": last.timestamp.isoformat(),
            "elapsed_seconds": round(elapsed, 1),
            "remaining_seconds": round(max(remaining, 0.0), 1),
        }
        if elapsed < self.min_seconds_between_trades:
            return (
                f"Cooldown active for {symbol}: last trade {elapsed:.0f}s ago, "
                f"{remaining:.0f}s remaining"
            )
        return None

    def _check_signal_strength(self, symbol: str, side: str, signal_strength: Optional[float],
                               positions: Optional[Sequence[BrokerPosition]],
                               result: ValidationResult) -> Optional[str]:
        if positions is None:
            try:
                positions = self.broker.get_positions()
            except BrokerError as e:
                logger.warning(f"Positions unavailable for signal check on {symbol}: {e}")
                result.checks["signal_strength"] = {"skipped": "positions unavailable"}
                return None

        target = normalize_side(side)
        held = [p for p in positions if p.symbol == symbol and p.abs_qty > 0]
        same_direction = any(normalize_side(p.side) == target for p in held)
        if not same_direction:
            result.checks["signal_strength"] = {
                "position_open": bool(held),
                "same_direction": False,
            }
            return None

        last = self.journal.last_signal(symbol, side)
        if last is None:
            result.checks["signal_strength"] = {"position_open": True, "last_strength": None}
            return None

        required = last.signal_strength * (1.0 + self.signal_improvement_threshold)
        result.checks["signal_strength"] = {
            "position_open": True,
            "last_strength": last.signal_strength,
            "required_above": round(required, 6),
            "strength": signal_strength,
        }
        if signal_strength is None:
            return f"Signal strength required to add to open {symbol} position"
        if signal_strength <= required:
            return (
                f"Signal for {symbol} not strong enough: {signal_strength:.3f} <= "
                f"{required:.3f} (last {last.signal_strength:.3f} "
                f"+{self.signal_improvement_threshold:.0%})"
            )
        return None

    def _check_risk(self, symbol: str, side: str, quantity: float, price: float,
                    account: Optional[Account], result: ValidationResult) -> Optional[str]:
        notional = quantity * price

        if account is None:
            try:
                account = self.broker.get_account()
            except BrokerError as e:
                logger.warning(f"Account unavailable for risk check on {symbol}: {e}")
                account = None

        limits = {"max_position_value": self.max_position_value_usd}
        if account is not None:
            limits["pct_of_equity"] = account.equity * self.max_position_pct_of_equity
            if side == "buy":
                limits["available_cash"] = account.cash

        risk_checks: Dict[str, Any] = {"notional": round(notional, 2), "limits": {}}
        result.checks["risk"] = risk_checks
        if account is None:
            risk_checks["account"] = "unavailable"

        for name, limit in limits.items():
            risk_checks["limits"][name] = round(limit, 2)
            if notional > limit:
                return (
                    f"Order for {symbol} exceeds {name}: notional ${notional:,.2f} > "
                    f"limit ${limit:,.2f}"
                )

        binding = min(limits, key=lambda name: limits[name] - notional)
        risk_checks["binding_limit"] = binding
        risk_checks["headroom_usd"] = round(limits[binding] - notional, 2)
        risk_checks["utilization"] = round(notional / limits[binding], 4) if limits[binding] > 0 else 1.0
        return None

    def _check_pending_orders(self, symbol: str, result: ValidationResult) -> Optional[str]:
        if not self.check_pending_orders:
            return None
        try:
            orders = self.broker.list_open_orders(symbol)
        except BrokerError as e:
            logger.warning(f"Open orders unavailable for {symbol}: {e}")
            result.checks["pending_orders"] = {"skipped": "orders unavailable"}
            return None

        pending = [o for o in orders if o.symbol == symbol and o.is_open]
        result.checks["pending_orders"] = {"count": len(pending)}
        if pending:
            return f"{len(pending)} pending order(s) already working for {symbol}"
        return None
