"""
Ledger-backed records for the position lifecycle.

Each record maps to one ledger table row. Rows arrive as text, so `from_row`
parses numbers and timestamps and `to_row` produces the column mapping the
ledger writes back.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from infra.symbols import normalize_symbol

LONG = "long"
SHORT = "short"

_SIDE_ALIASES = {
    "long": LONG,
    "buy": LONG,
    "short": SHORT,
    "sell": SHORT,
}


def normalize_side(side: Optional[str]) -> str:
    """Map long/buy -> long and short/sell -> short."""
    normalized = _SIDE_ALIASES.get(str(side or "").strip().lower())
    if normalized is None:
        raise ValueError(f"Unknown side: {side!r}")
    return normalized


def order_side(side: str) -> str:
    """Order side that opens a position of `side`."""
    return "buy" if normalize_side(side) == LONG else "sell"


def exit_order_side(side: str) -> str:
    """Order side that closes a position of `side`."""
    return "sell" if normalize_side(side) == LONG else "buy"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass
class PositionLevels:
    """Exit metadata protecting one open position."""
    symbol: str
    side: str
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_price: Optional[float] = None
    quantity: int = 0
    strategy: str = ""
    order_id: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        self.symbol = normalize_symbol(self.symbol)
        self.side = normalize_side(self.side)
        self.stop_loss = _float_or_none(self.stop_loss)
        self.take_profit = _float_or_none(self.take_profit)
        self.entry_price = _float_or_none(self.entry_price)
        self.quantity = abs(int(float(self.quantity or 0)))

    def has_levels(self) -> bool:
        return self.stop_loss is not None or self.take_profit is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PositionLevels":
        return cls(
            symbol=row.get("symbol") or "",
            side=row.get("side") or LONG,
            stop_loss=row.get("stop_loss"),
            take_profit=row.get("take_profit"),
            entry_price=row.get("entry_price"),
            quantity=row.get("quantity") or 0,
            strategy=row.get("strategy") or "",
            order_id=row.get("order_id"),
            created_at=parse_timestamp(row.get("created_at")),
            expires_at=parse_timestamp(row.get("expires_at")),
        )


@dataclass
class TradeState:
    """One executed order, entry or exit."""
    symbol: str
    side: str  # order side: buy | sell
    quantity: float
    price: Optional[float]
    strategy: str = ""
    order_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    status: str = "submitted"

    def __post_init__(self):
        self.symbol = normalize_symbol(self.symbol)
        self.side = str(self.side or "").lower()

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TradeState":
        return cls(
            symbol=row.get("symbol") or "",
            side=row.get("side") or "",
            quantity=float(row.get("quantity") or 0),
            price=_float_or_none(row.get("price")),
            strategy=row.get("strategy") or "",
            order_id=row.get("order_id"),
            timestamp=parse_timestamp(row.get("timestamp")),
            stop_loss=_float_or_none(row.get("stop_loss")),
            take_profit=_float_or_none(row.get("take_profit")),
            status=row.get("status") or "submitted",
        )


@dataclass
class SignalStrengthRecord:
    """Confidence of a submitted signal, for re-entry gating."""
    symbol: str
    side: str  # order side: buy | sell
    signal_strength: float
    strategy: str = ""
    order_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        self.symbol = normalize_symbol(self.symbol)
        self.side = str(self.side or "").lower()
        self.signal_strength = float(self.signal_strength)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SignalStrengthRecord":
        return cls(
            symbol=row.get("symbol") or "",
            side=row.get("side") or "",
            signal_strength=float(row.get("signal_strength") or 0.0),
            strategy=row.get("strategy") or "",
            order_id=row.get("order_id"),
            timestamp=parse_timestamp(row.get("timestamp")),
        )
