"""
Core: Risk Manager

Turns a raw signal into a sized order with exit levels, and holds the
account-wide circuit breaker.

- Sizing: equity * min(requested fraction, max_position_size), floored to
  whole shares; below min_position_value_usd the signal is dropped
- Exit levels: stop_loss_pct / take_profit_pct around the signal price
  (mirrored for sells) unless the signal already carries them
- Concurrency cap: no new symbol beyond max_concurrent_positions
- Daily loss: trading halts once equity falls max_daily_loss below the
  previous close (last_equity)

Configuration from policy.yaml (`risk` section).
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence
import logging
import math

from core.broker_alpaca import Account, BrokerPosition
from strategy.signals import TradeSignal

logger = logging.getLogger(__name__)


@dataclass
class SizingResult:
    """Result of sizing a signal"""
    approved: bool
    signal: Optional[TradeSignal] = None
    reason: str = ""


class RiskManager:

    def __init__(self, config: Dict):
        config = config or {}
        self.max_position_size = float(config.get("max_position_size", 0.05))
        self.min_position_value_usd = float(config.get("min_position_value_usd", 100.0))
        self.stop_loss_pct = float(config.get("stop_loss_pct", 0.03))
        self.take_profit_pct = float(config.get("take_profit_pct", 0.06))
        self.max_concurrent_positions = int(config.get("max_concurrent_positions", 5))
        self.max_daily_loss = float(config.get("max_daily_loss", 0.02))

        for name in ("max_position_size", "stop_loss_pct", "take_profit_pct", "max_daily_loss"):
            value = getattr(self, name)
            if not 0 < value < 1:
                raise ValueError(f"risk.{name} must be a fraction in (0, 1), got {value}")

        logger.info(
            f"Initialized RiskManager: max_size={self.max_position_size:.1%}, "
            f"SL={self.stop_loss_pct:.1%}, TP={self.take_profit_pct:.1%}, "
            f"max_positions={self.max_concurrent_positions}, daily_loss={self.max_daily_loss:.1%}"
        )

    def exit_levels(self, side: str, price: float):
        """(stop_loss, take_profit) for an entry at `price`."""
        if side == "buy":
            return (round(price * (1 - self.stop_loss_pct), 4),
                    round(price * (1 + self.take_profit_pct), 4))
        return (round(price * (1 + self.stop_loss_pct), 4),
                round(price * (1 - self.take_profit_pct), 4))

    def adjust_signal(self, signal: TradeSignal, account: Account,
                      positions: Sequence[BrokerPosition]) -> SizingResult:
        """Size `signal` and fill missing exit levels."""
        held = {p.symbol for p in positions}
        if signal.symbol not in held and len(held) >= self.max_concurrent_positions:
            reason = f"max concurrent positions reached ({len(held)}/{self.max_concurrent_positions})"
            logger.warning(f"{signal.symbol}: {reason}")
            return SizingResult(approved=False, reason=reason)

        requested = account.equity * max(signal.position_size, 0.0)
        ceiling = account.equity * self.max_position_size
        risk_amount = min(requested, ceiling)
        if risk_amount < self.min_position_value_usd:
            reason = (
                f"position value ${risk_amount:,.2f} below minimum "
                f"${self.min_position_value_usd:,.2f}"
            )
            logger.info(f"{signal.symbol}: {reason}")
            return SizingResult(approved=False, reason=reason)

        quantity = math.floor(risk_amount / signal.current_price)
        if quantity <= 0:
            reason = f"price {signal.current_price} too high for ${risk_amount:,.2f}"
            logger.info(f"{signal.symbol}: {reason}")
            return SizingResult(approved=False, reason=reason)

        stop_loss, take_profit = self.exit_levels(signal.side, signal.current_price)
        signal.quantity = quantity
        signal.risk_amount = round(risk_amount, 2)
        if signal.stop_loss is None:
            signal.stop_loss = stop_loss
        if signal.take_profit is None:
            signal.take_profit = take_profit

        logger.info(
            f"Sized {signal.symbol} {signal.side}: qty={quantity} (${risk_amount:,.2f}), "
            f"SL={signal.stop_loss} TP={signal.take_profit}"
        )
        return SizingResult(approved=True, signal=signal)

    def is_daily_loss_limit_exceeded(self, account: Account) -> bool:
        previous = account.last_equity or account.equity
        if previous <= 0:
            return False
        daily_pnl = account.equity - previous
        limit = previous * self.max_daily_loss
        if daily_pnl < -limit:
            logger.warning(
                f"Daily loss limit exceeded: pnl=${daily_pnl:,.2f} limit=-${limit:,.2f} "
                f"(equity ${account.equity:,.2f}, previous ${previous:,.2f})"
            )
            return True
        return False

    def performance_snapshot(self, account: Account, positions: Sequence[BrokerPosition]) -> Dict:
        previous = account.last_equity or account.equity
        return {
            "equity": account.equity,
            "daily_pnl": round(account.equity - previous, 2),
            "daily_return_pct": round((account.equity - previous) / previous * 100, 4) if previous else 0.0,
            "unrealized_pnl": round(sum(p.unrealized_pl for p in positions), 2),
            "position_count": len(positions),
            "buying_power": account.buying_power,
        }
