"""
Strategy: Trade Signals

The indicator layer lives outside this engine; it hands over candidate
signals in a fixed shape. This module defines that shape and reads signal
batches from a YAML/JSON file for the runner.

Signal file format:
    signals:
      - symbol: AAPL
        side: buy
        current_price: 187.20
        position_size: 0.05      # fraction of equity requested
        confidence: 0.72         # 0-1, used as signal strength
        stop_loss: 181.60        # optional, filled from policy if missing
        take_profit: 198.40      # optional
        strategy: sma_crossover
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import logging

import yaml

from core.models import order_side
from infra.symbols import normalize_symbol

logger = logging.getLogger(__name__)


@dataclass
class TradeSignal:
    """A candidate entry from the signal source"""
    symbol: str
    side: str  # "buy" | "sell"
    current_price: float
    position_size: float  # fraction of equity
    confidence: float  # 0.0 to 1.0

    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    strategy: str = "unknown"

    # Filled by the risk manager
    quantity: int = 0
    risk_amount: float = 0.0

    timestamp: datetime = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.symbol = normalize_symbol(self.symbol)
        self.side = order_side(self.side)
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)
        if self.current_price is None or float(self.current_price) <= 0:
            raise ValueError(f"Signal for {self.symbol} needs a positive current_price")
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"Signal confidence must be within 0-1, got {self.confidence}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TradeSignal":
        known = {
            "symbol", "side", "current_price", "position_size", "confidence",
            "stop_loss", "take_profit", "strategy",
        }
        return cls(
            symbol=data.get("symbol"),
            side=data.get("side"),
            current_price=float(data.get("current_price") or data.get("price") or 0),
            position_size=float(data.get("position_size", 0.0)),
            confidence=float(data.get("confidence", 0.0)),
            stop_loss=data.get("stop_loss"),
            take_profit=data.get("take_profit"),
            strategy=str(data.get("strategy") or "unknown"),
            metadata={k: v for k, v in data.items() if k not in known},
        )


def load_signals(path: str) -> List[TradeSignal]:
    """
    Load signals from a YAML or JSON file.

    Invalid entries are logged and skipped; a missing or malformed file raises.
    """
    file_path = Path(path)
    with open(file_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    raw_signals = data.get("signals", []) if isinstance(data, dict) else data
    if not isinstance(raw_signals, list):
        raise ValueError(f"{file_path}: expected a list of signals")

    signals = []
    for idx, raw in enumerate(raw_signals):
        try:
            signals.append(TradeSignal.from_dict(raw))
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"{file_path}: skipping signal #{idx}: {e}")
    logger.info(f"Loaded {len(signals)} signal(s) from {file_path}")
    return signals
