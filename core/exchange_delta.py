"""
perp-agent Core: Exchange Connector (Delta Exchange)

Delta Exchange REST v2 integration for one perpetual product.
HMAC-SHA256 signed requests; market data, wallet, positions and
bracket order placement.
"""

import hashlib
import hmac
import json
import logging
import os
import random
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from core.exceptions import CollaboratorError
from core.interfaces import MarketDataProvider, TradingAPI
from core.models import Candle, OrderState, OrderStatusReport

logger = logging.getLogger(__name__)

DELTA_BASE = "https://api.india.delta.exchange"

_STATE_MAP = {
    "open": OrderState.OPEN.value,
    "pending": OrderState.PENDING.value,
    "closed": OrderState.CLOSED.value,
    "filled": OrderState.CLOSED.value,
    "cancelled": OrderState.CANCELLED.value,
    "canceled": OrderState.CANCELLED.value,
}


def new_client_order_id() -> str:
    """Idempotency key for one logical order (Delta caps it at 32 chars)."""
    return uuid.uuid4().hex


class DeltaExchange(MarketDataProvider, TradingAPI):
    """
    Delta Exchange connector bound to a single product symbol.

    Supports:
    - Market data (ticker, candles, L2 orderbook)
    - Account data (wallet balances, positions)
    - Order execution (leverage, market/limit bracket orders, cancel)
    """

    def __init__(self, symbol: str = "ETHUSD", api_key: Optional[str] = None,
                 api_secret: Optional[str] = None, base_url: str = DELTA_BASE,
                 timeout: float = 20.0, max_retries: int = 3, read_only: bool = False):
        self.symbol = symbol
        self.api_key = api_key or os.getenv("DELTA_API_KEY", "")
        self.api_secret = api_secret or os.getenv("DELTA_API_SECRET", "")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.read_only = read_only

        self._last_call: Dict[str, float] = {}
        self._min_interval = 0.1  # 100ms between calls per endpoint
        self._product: Optional[Dict[str, Any]] = None

        logger.info(f"Initialized DeltaExchange (symbol={symbol}, read_only={read_only})")

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _rate_limit(self, endpoint: str):
        """Simple rate limiting"""
        last = self._last_call.get(endpoint, 0)
        elapsed = time.time() - last
        if elapsed < self._min_interval:
            time.sleep(self._min_interval - elapsed)
        self._last_call[endpoint] = time.time()

    def _headers(self, method: str, path: str, query_string: str, body_str: str) -> dict:
        """Signed headers: HMAC-SHA256 over method + timestamp + path + query + body"""
        if not self.has_credentials():
            raise CollaboratorError("delta: DELTA_API_KEY and DELTA_API_SECRET required for authenticated requests")

        ts = str(int(time.time()))
        prehash = method.upper() + ts + path + query_string + body_str
        signature = hmac.new(
            self.api_secret.encode(),
            prehash.encode(),
            hashlib.sha256,
        ).hexdigest()

        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "perp-agent",
            "api-key": self.api_key,
            "timestamp": ts,
            "signature": signature,
        }

    def _req(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
             body: Optional[dict] = None, authenticated: bool = False) -> Any:
        """
        Make HTTP request to Delta API with exponential backoff.

        Retries on 429, 5xx and network errors. Does NOT retry on other
        4xx. Final failures are raised as CollaboratorError.

        Returns:
            The "result" field of the response envelope
        """
        query_string = ""
        if params:
            query_string = "?" + urlencode(sorted(params.items()))
        body_str = json.dumps(body, separators=(",", ":")) if body is not None else ""
        url = f"{self.base_url}{path}{query_string}"
        source = f"delta {method.upper()} {path}"

        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                if authenticated:
                    headers = self._headers(method, path, query_string, body_str)
                else:
                    headers = {"Content-Type": "application/json", "Accept": "application/json"}

                response = requests.request(
                    method,
                    url,
                    headers=headers,
                    data=body_str or None,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                payload = response.json()
                if isinstance(payload, dict) and payload.get("success") is False:
                    raise CollaboratorError(f"{source}: {payload.get('error')}")
                return payload.get("result") if isinstance(payload, dict) else payload

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0

                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Delta API client error: {status_code} - {e.response.text}")
                    raise CollaboratorError(source, e, status_code=status_code) from e

                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {path}, attempt {attempt + 1}/{self.max_retries}")
                else:
                    logger.warning(f"Server error ({status_code}) on {path}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {path}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except ValueError as e:
                raise CollaboratorError(f"{source}: invalid JSON", e) from e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {path}")
        raise CollaboratorError(source, last_exception)

    # ----- market data -----

    def get_current_price(self) -> float:
        self._rate_limit("ticker")
        result = self._req("GET", f"/v2/tickers/{self.symbol}") or {}
        for key in ("mark_price", "close", "spot_price"):
            raw = result.get(key)
            if raw not in (None, ""):
                try:
                    price = float(raw)
                except (TypeError, ValueError):
                    continue
                if price > 0:
                    return price
        raise CollaboratorError(f"delta: no price in ticker for {self.symbol}")

    def get_ohlcv(self, timeframe: str, start: datetime, end: datetime) -> List[Candle]:
        self._rate_limit("candles")
        params = {
            "resolution": timeframe,
            "symbol": self.symbol,
            "start": str(int(start.timestamp())),
            "end": str(int(end.timestamp())),
        }
        rows = self._req("GET", "/v2/history/candles", params=params) or []
        candles = []
        for row in rows:
            try:
                candles.append(Candle(
                    time=int(row["time"]),
                    open=float(row["open"]),
                    high=float(row["high"]),
                    low=float(row["low"]),
                    close=float(row["close"]),
                    volume=float(row.get("volume") or 0.0),
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed candle {row}: {e}")
        candles.sort(key=lambda c: c.time)
        return candles

    def get_orderbook(self, depth: int = 10) -> Dict[str, List[Dict[str, Any]]]:
        self._rate_limit("orderbook")
        result = self._req("GET", f"/v2/l2orderbook/{self.symbol}") or {}

        def _norm(levels):
            out = []
            for level in (levels or [])[:depth]:
                try:
                    out.append({"price": float(level["price"]), "size": float(level["size"])})
                except (KeyError, TypeError, ValueError):
                    continue
            return out

        return {"buy": _norm(result.get("buy")), "sell": _norm(result.get("sell"))}

    # ----- account / trading -----

    def get_products(self) -> List[Dict[str, Any]]:
        """
        Products visible to this agent.

        Only the bound product is fetched; the full catalogue is large and
        the engine trades one symbol.
        """
        return [self._get_product()]

    def _get_product(self) -> Dict[str, Any]:
        if self._product is None:
            self._rate_limit("products")
            product = self._req("GET", f"/v2/products/{self.symbol}") or {}
            if not product.get("id"):
                raise CollaboratorError(f"delta: product {self.symbol} not found")
            self._product = product
        return self._product

    def get_wallet_balance(self) -> List[Dict[str, Any]]:
        self._rate_limit("wallet")
        return self._req("GET", "/v2/wallet/balances", authenticated=True) or []

    def set_leverage(self, leverage: int) -> None:
        self._guard_writes()
        product_id = self._get_product()["id"]
        self._req(
            "POST",
            f"/v2/products/{product_id}/orders/leverage",
            body={"leverage": str(int(leverage))},
            authenticated=True,
        )
        logger.info(f"Leverage set to {leverage}x on {self.symbol}")

    def place_market_order_with_bracket(self, quantity: int, side: str,
                                        stop_loss: float, take_profit: float) -> Optional[str]:
        order = {
            "product_id": self._get_product()["id"],
            "size": int(quantity),
            "side": side,
            "order_type": "market_order",
            "time_in_force": "ioc",
            "bracket_stop_loss_price": f"{stop_loss:.2f}",
            "bracket_take_profit_price": f"{take_profit:.2f}",
            "client_order_id": new_client_order_id(),
        }
        return self._place(order)

    def place_limit_order_with_bracket(self, quantity: int, side: str, limit_price: float,
                                       stop_loss: float, take_profit: float) -> Optional[str]:
        order = {
            "product_id": self._get_product()["id"],
            "size": int(quantity),
            "side": side,
            "order_type": "limit_order",
            "time_in_force": "gtc",
            "limit_price": f"{limit_price:.2f}",
            "bracket_stop_loss_price": f"{stop_loss:.2f}",
            "bracket_take_profit_price": f"{take_profit:.2f}",
            "client_order_id": new_client_order_id(),
        }
        return self._place(order)

    def _place(self, order: Dict[str, Any]) -> Optional[str]:
        self._guard_writes()
        self._rate_limit("orders")
        logger.info(
            f"Placing {order['order_type']} {order['side']} {order['size']}x {self.symbol} "
            f"SL={order['bracket_stop_loss_price']} TP={order['bracket_take_profit_price']} "
            f"(client_order_id={order['client_order_id']})"
        )
        # Retries resend the same body, so the exchange sees one client_order_id per order
        try:
            result = self._req("POST", "/v2/orders", body=order, authenticated=True) or {}
        except CollaboratorError:
            result = self._find_by_client_order_id(order["client_order_id"])
            if result is None:
                raise
            logger.warning(
                f"Order placement reported failure but exchange has order {result.get('id')} "
                f"for client_order_id={order['client_order_id']}"
            )
        order_id = result.get("id")
        return str(order_id) if order_id is not None else None

    def _find_by_client_order_id(self, client_order_id: str) -> Optional[Dict[str, Any]]:
        """Look up an order we may have placed before a lost response."""
        try:
            result = self._req("GET", f"/v2/orders/client_order_id/{client_order_id}", authenticated=True)
        except CollaboratorError as e:
            logger.info(f"No order found for client_order_id={client_order_id}: {e}")
            return None
        return result if isinstance(result, dict) and result.get("id") is not None else None

    def get_order_status(self, order_ref: str) -> OrderStatusReport:
        self._rate_limit("order_status")
        result = self._req("GET", f"/v2/orders/{order_ref}", authenticated=True) or {}
        state = _STATE_MAP.get(str(result.get("state", "")).lower(), OrderState.UNKNOWN.value)

        try:
            size = float(result.get("size") or 0)
            unfilled = float(result.get("unfilled_size") or 0)
            filled_qty = max(0.0, size - unfilled)
        except (TypeError, ValueError):
            filled_qty = 0.0

        avg_fill_price = None
        raw_price = result.get("average_fill_price")
        if raw_price not in (None, ""):
            try:
                avg_fill_price = float(raw_price)
            except (TypeError, ValueError):
                avg_fill_price = None

        return OrderStatusReport(state=state, filled_qty=filled_qty, avg_fill_price=avg_fill_price)

    def get_positions(self) -> List[Dict[str, Any]]:
        self._rate_limit("positions")
        rows = self._req("GET", "/v2/positions/margined", authenticated=True) or []
        positions = []
        for row in rows:
            symbol = row.get("product_symbol") or row.get("symbol")
            try:
                size = float(row.get("size") or 0)
            except (TypeError, ValueError):
                continue
            if size == 0:
                continue
            positions.append({
                "symbol": symbol,
                "size": size,
                "entry_price": row.get("entry_price"),
                "margin": row.get("margin"),
            })
        return positions

    def cancel_order(self, order_ref: str) -> bool:
        self._guard_writes()
        self._rate_limit("orders")
        body = {"id": int(order_ref) if str(order_ref).isdigit() else order_ref,
                "product_id": self._get_product()["id"]}
        self._req("DELETE", "/v2/orders", body=body, authenticated=True)
        logger.info(f"Cancelled order {order_ref}")
        return True

    def test_connection(self) -> bool:
        try:
            self._get_product()
            logger.info("Delta Exchange connection test successful")
            return True
        except CollaboratorError as e:
            logger.error(f"Delta Exchange connection test failed: {e}")
            return False

    def _guard_writes(self) -> None:
        if self.read_only:
            raise CollaboratorError("delta: exchange client is read-only")
