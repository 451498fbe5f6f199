"""
Tests for ledger record types and symbol/side normalization
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.models import (
    PositionLevels,
    exit_order_side,
    normalize_side,
    order_side,
    parse_timestamp,
)
from infra.symbols import normalize_symbol


@pytest.mark.parametrize("raw,expected", [
    ("aapl", "AAPL"),
    (" brk/b ", "BRK.B"),
    ("BRK-B", "BRK.B"),
    ("", ""),
    (None, ""),
])
def test_normalize_symbol(raw, expected):
    assert normalize_symbol(raw) == expected


def test_sides():
    assert normalize_side("BUY") == "long"
    assert normalize_side("short") == "short"
    assert order_side("long") == "buy"
    assert exit_order_side("long") == "sell"
    assert exit_order_side("sell") == "buy"
    with pytest.raises(ValueError):
        normalize_side("flat")


def test_parse_timestamp():
    assert parse_timestamp("2024-03-04T15:00:00Z") == datetime(2024, 3, 4, 15, tzinfo=timezone.utc)
    assert parse_timestamp("2024-03-04T15:00:00").tzinfo == timezone.utc
    assert parse_timestamp("") is None


def test_levels_from_ledger_row():
    levels = PositionLevels.from_row({
        "symbol": "aapl", "side": "buy", "stop_loss": "95", "take_profit": None,
        "entry_price": "100", "quantity": "10.0", "strategy": None, "order_id": "o-1",
        "created_at": "2024-03-04T15:00:00+00:00", "expires_at": "2024-03-05T15:00:00+00:00",
    })
    assert levels.symbol == "AAPL"
    assert levels.side == "long"
    assert levels.stop_loss == 95.0
    assert levels.take_profit is None
    assert levels.quantity == 10
    assert levels.has_levels()
    assert not levels.is_expired(levels.expires_at)
    assert levels.is_expired(levels.expires_at + timedelta(seconds=1))
