"""
Core: Broker Connector (Alpaca)

Alpaca Trading API v2 integration for US equities.
Covers the calls the position lifecycle needs: account, positions, latest
quote, market-order submission, order lookup and market clock.
"""

import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import BrokerError
from infra.rate_limiter import RateLimiter
from infra.symbols import normalize_symbol

logger = logging.getLogger(__name__)

PAPER_BASE = "https://paper-api.alpaca.markets"
LIVE_BASE = "https://api.alpaca.markets"
DATA_BASE = "https://data.alpaca.markets"

OPEN_ORDER_STATUSES = ("new", "accepted", "pending_new", "partially_filled")


def _f(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Account:
    """Account balances"""
    equity: float
    cash: float
    buying_power: float
    last_equity: float = 0.0
    status: str = "ACTIVE"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            equity=_f(data.get("equity")),
            cash=_f(data.get("cash")),
            buying_power=_f(data.get("buying_power")),
            last_equity=_f(data.get("last_equity")),
            status=str(data.get("status") or "ACTIVE"),
        )


@dataclass
class BrokerPosition:
    """Position as reported by the broker (qty is signed, negative for shorts)"""
    symbol: str
    qty: float
    side: str
    avg_entry_price: float
    current_price: float
    market_value: float = 0.0
    unrealized_pl: float = 0.0

    @property
    def abs_qty(self) -> float:
        return abs(self.qty)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BrokerPosition":
        qty = _f(data.get("qty"))
        side = str(data.get("side") or ("short" if qty < 0 else "long")).lower()
        return cls(
            symbol=normalize_symbol(data.get("symbol")),
            qty=qty,
            side=side,
            avg_entry_price=_f(data.get("avg_entry_price")),
            current_price=_f(data.get("current_price")),
            market_value=_f(data.get("market_value")),
            unrealized_pl=_f(data.get("unrealized_pl")),
        )


@dataclass
class Quote:
    """Latest top-of-book quote"""
    symbol: str
    bid: float
    ask: float
    timestamp: datetime


@dataclass
class Order:
    """Order snapshot"""
    id: str
    status: str
    symbol: str = ""
    side: str = ""
    qty: float = 0.0
    filled_qty: float = 0.0
    filled_avg_price: Optional[float] = None
    client_order_id: Optional[str] = None

    @property
    def is_filled(self) -> bool:
        return self.status == "filled" and self.filled_avg_price is not None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ORDER_STATUSES

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Order":
        filled_price = data.get("filled_avg_price")
        return cls(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or "unknown").lower(),
            symbol=normalize_symbol(data.get("symbol")),
            side=str(data.get("side") or "").lower(),
            qty=_f(data.get("qty")),
            filled_qty=_f(data.get("filled_qty")),
            filled_avg_price=_f(filled_price) if filled_price not in (None, "") else None,
            client_order_id=data.get("client_order_id"),
        )


class AlpacaBroker:
    """
    Alpaca REST connector with key/secret header authentication.

    Reads retry on 429, 5xx and network errors. Order submission is sent
    exactly once per call; callers own any resubmission policy.
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 paper: bool = True, read_only: bool = True,
                 rate_limiter: Optional[RateLimiter] = None,
                 max_retries: int = 3, retry_delay_seconds: float = 1.0,
                 timeout: float = 10.0, client_order_prefix: str = "posmon"):
        self.api_key = api_key or os.getenv("ALPACA_API_KEY", "")
        self.api_secret = api_secret or os.getenv("ALPACA_SECRET_KEY", "")
        self.base_url = PAPER_BASE if paper else LIVE_BASE
        self.paper = paper
        self.read_only = read_only
        self.rate_limiter = rate_limiter
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = float(retry_delay_seconds)
        self.timeout = timeout
        self.client_order_prefix = client_order_prefix

        logger.info(f"Initialized AlpacaBroker (paper={paper}, read_only={read_only})")

    def _headers(self) -> Dict[str, str]:
        return {
            "APCA-API-KEY-ID": self.api_key,
            "APCA-API-SECRET-KEY": self.api_secret,
            "Content-Type": "application/json",
        }

    def _req(self, method: str, path: str, base: Optional[str] = None,
             params: Optional[Dict[str, Any]] = None, body: Optional[dict] = None,
             retry: bool = True) -> Any:
        """
        HTTP request against the Alpaca API.

        Retries on 429, 5xx and timeouts/connection errors (fixed delay).
        Does NOT retry other 4xx responses. Raises BrokerError when the
        request cannot be completed.
        """
        url = (base or self.base_url) + path
        attempts = self.max_retries if retry else 1
        last_exception: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(attempts):
            if self.rate_limiter is not None:
                self.rate_limiter.acquire("broker", endpoint=path)
            try:
                response = requests.request(
                    method,
                    url,
                    headers=self._headers(),
                    params=params,
                    json=body,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                last_status = status_code
                text = e.response.text if e.response is not None else ""
                if status_code is not None and 400 <= status_code < 500 and status_code != 429:
                    if status_code == 404:
                        logger.debug(f"Alpaca API 404: {path}")
                    else:
                        logger.error(f"Alpaca API client error: {status_code} - {text}")
                    raise BrokerError(
                        f"Alpaca rejected {method} {path}: {status_code} {text}",
                        status_code=status_code, original=e,
                    )
                logger.warning(f"Alpaca API {status_code} on {path}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {path}: {e}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            if attempt < attempts - 1:
                time.sleep(self.retry_delay_seconds)

        logger.error(f"Alpaca request {method} {path} failed after {attempts} attempt(s)")
        raise BrokerError(
            f"Alpaca request {method} {path} failed: {last_exception}",
            status_code=last_status, original=last_exception,
        )

    def get_account(self) -> Account:
        return Account.from_api(self._req("GET", "/v2/account"))

    def get_positions(self) -> List[BrokerPosition]:
        data = self._req("GET", "/v2/positions") or []
        return [BrokerPosition.from_api(item) for item in data]

    def get_quote(self, symbol: str) -> Quote:
        symbol = normalize_symbol(symbol)
        data = self._req("GET", f"/v2/stocks/{symbol}/quotes/latest", base=DATA_BASE) or {}
        quote = data.get("quote") or {}
        bid = _f(quote.get("bp"))
        ask = _f(quote.get("ap"))
        if bid <= 0 or ask <= 0:
            raise BrokerError(f"No two-sided quote for {symbol}: bid={bid}, ask={ask}")

        return Quote(symbol=symbol, bid=bid, ask=ask, timestamp=datetime.now(timezone.utc))

    def submit_order(self, symbol: str, qty: float, side: str, order_type: str = "market",
                     time_in_force: str = "day", client_order_id: Optional[str] = None) -> Order:
        """
        Submit an order. Sent once, never retried here.

        Raises:
            ValueError: in read-only mode or for a non-positive quantity
            BrokerError: if the broker rejects or cannot be reached
        """
        if self.read_only:
            raise ValueError("Cannot place orders in READ_ONLY mode")
        if qty <= 0:
            raise ValueError(f"Order quantity must be positive, got {qty}")

        body = {
            "symbol": normalize_symbol(symbol),
            "qty": str(int(qty)) if float(qty).is_integer() else str(qty),
            "side": side.lower(),
            "type": order_type,
            "time_in_force": time_in_force,
            "client_order_id": client_order_id or f"{self.client_order_prefix}-{uuid.uuid4().hex[:20]}",
        }
        logger.info(f"Submitting {order_type} {body['side']} {body['qty']} {body['symbol']}")
        return Order.from_api(self._req("POST", "/v2/orders", body=body, retry=False))

    def get_order(self, order_id: str) -> Order:
        return Order.from_api(self._req("GET", f"/v2/orders/{order_id}"))

    def list_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        params: Dict[str, Any] = {"status": "open", "limit": 100}
        if symbol:
            params["symbols"] = normalize_symbol(symbol)
        data = self._req("GET", "/v2/orders", params=params) or []
        return [Order.from_api(item) for item in data]

    def is_market_open(self) -> bool:
        data = self._req("GET", "/v2/clock") or {}
        return bool(data.get("is_open"))


def create_broker_from_config(config: Optional[Dict[str, Any]] = None, mode: str = "PAPER",
                              rate_limiter: Optional[RateLimiter] = None) -> AlpacaBroker:
    """Build the broker from the `broker` section of app.yaml."""
    config = config or {}
    mode = mode.upper()
    read_only = mode == "DRY_RUN" or bool(config.get("read_only", False))
    return AlpacaBroker(
        api_key=os.getenv(config.get("api_key_env", "ALPACA_API_KEY"), ""),
        api_secret=os.getenv(config.get("secret_key_env", "ALPACA_SECRET_KEY"), ""),
        paper=mode != "LIVE",
        read_only=read_only,
        rate_limiter=rate_limiter,
        max_retries=int(config.get("max_retries", 3)),
        retry_delay_seconds=float(config.get("retry_delay_seconds", 1.0)),
        timeout=float(config.get("timeout_seconds", 10.0)),
        client_order_prefix=str(config.get("client_order_prefix", "posmon")),
    )
