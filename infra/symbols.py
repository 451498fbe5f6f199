"""Symbol normalization for equity tickers.

Ledger rows, broker payloads and incoming signals all spell tickers slightly
differently (`aapl`, ` AAPL `, `brk.b`). Everything that keys state by symbol
goes through `normalize_symbol` so a position tracked as `AAPL` is never
missed because a signal said `aapl`.
"""

from __future__ import annotations

from typing import Optional

# Class-share separators seen across vendors; the broker uses a dot.
_CLASS_SEPARATORS = ("/", "-", "_")


def normalize_symbol(symbol: Optional[str]) -> str:
    """Return the canonical upper-case ticker, or "" for falsy input."""

    if not symbol:
        return ""

    token = str(symbol).strip().upper().replace(" ", "")
    for sep in _CLASS_SEPARATORS:
        token = token.replace(sep, ".")
    while ".." in token:
        token = token.replace("..", ".")
    return token.strip(".")


__all__ = ["normalize_symbol"]
