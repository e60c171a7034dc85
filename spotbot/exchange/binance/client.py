from __future__ import annotations

import logging
import random
import threading
import time
from typing import List

import requests

from spotbot.core.config import settings
from spotbot.core.errors import ExchangeRejectedError, TransientNetworkError
from spotbot.exchange.binance.filters import extract_symbol_info, format_qty
from spotbot.exchange.binance.signing import signed_query
from spotbot.exchange.models import (
    BuyAvailability,
    ExchangeCredentials,
    ExchangeOrder,
    Kline,
    OrderFill,
    OrderPlaced,
    OrderRejected,
    OrderResult,
    SellAvailability,
    SymbolInfo,
)

log = logging.getLogger("spotbot.exchange")


def parse_kline(row: list) -> Kline:
    """
    Binance kline format:
    [openTime, open, high, low, close, volume, closeTime, ...]
    """
    return Kline(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
        close_time=int(row[6]),
    )


def parse_order(data: dict, side: str) -> ExchangeOrder:
    """FULL order response -> ExchangeOrder."""
    fills = []
    for f in data.get("fills") or []:
        fills.append(
            OrderFill(
                price=float(f.get("price", 0) or 0),
                qty=float(f.get("qty", 0) or 0),
                commission=float(f.get("commission", 0) or 0),
                commission_asset=str(f.get("commissionAsset", "") or ""),
            )
        )
    tt = data.get("transactTime")
    return ExchangeOrder(
        order_id=str(data.get("orderId", "") or ""),
        symbol=str(data.get("symbol", "") or ""),
        side=side,
        executed_qty=float(data.get("executedQty", 0) or 0),
        cummulative_quote_qty=float(data.get("cummulativeQuoteQty", 0) or 0),
        transact_time_ms=int(tt) if tt is not None else None,
        fills=fills,
    )


class BinanceSpotClient:
    """
    Binance spot REST client.

    Public market data works without credentials; balance checks and order
    placement need an ExchangeCredentials pair.
    """

    def __init__(
        self,
        credentials: ExchangeCredentials | None = None,
        base_url: str | None = None,
        recv_window: int | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
    ):
        self.credentials = credentials
        self.base_url = (base_url or settings.BINANCE_BASE_URL).rstrip("/")
        self.recv_window = int(recv_window or settings.BINANCE_RECV_WINDOW)
        self.timeout_s = float(timeout_s or settings.HTTP_TIMEOUT_SECONDS)
        self.max_retries = (
            settings.HTTP_MAX_RETRIES if max_retries is None else int(max_retries)
        )

        self._time_offset_ms: int = 0
        self._info_lock = threading.Lock()
        self._symbol_info_cache: dict[str, tuple[float, SymbolInfo]] = {}

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------
    def _raise_for_client_error(self, r: requests.Response, method: str, path: str):
        try:
            data = r.json()
        except ValueError:
            data = None
        code = data.get("code") if isinstance(data, dict) else None
        msg = data.get("msg") if isinstance(data, dict) else r.text[:300]
        raise ExchangeRejectedError(
            f"Binance HTTP {r.status_code} on {method} {path}: {msg}",
            status_code=r.status_code,
            code=code,
        )

    def _request(self, method: str, path: str, params=None, headers=None, retry: bool = True):
        url = f"{self.base_url}{path}"
        params = dict(params or {})
        headers = dict(headers or {})
        attempts = (self.max_retries if retry else 0) + 1

        last_err: Exception | None = None
        for attempt in range(attempts):
            try:
                r = requests.request(
                    method, url, params=params, headers=headers, timeout=self.timeout_s
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                if attempt + 1 < attempts:
                    time.sleep(min(0.4 * (2**attempt), 8.0))
                continue

            # Rate limit / temp ban
            if r.status_code in (418, 429):
                last_err = RuntimeError(f"rate limited ({r.status_code})")
                if attempt + 1 < attempts:
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                    sleep_s += random.uniform(0, 0.2)
                    time.sleep(min(sleep_s, 10.0))
                continue

            if r.status_code >= 500:
                last_err = RuntimeError(f"server error ({r.status_code})")
                if attempt + 1 < attempts:
                    time.sleep(min(0.4 * (2**attempt), 8.0))
                continue

            if r.status_code >= 400:
                self._raise_for_client_error(r, method, path)

            return r.json() if r.content else None

        raise TransientNetworkError(
            f"Binance request failed after {attempts} attempt(s): {method} {path} ({last_err})"
        )

    def _server_time_ms(self) -> int:
        data = self._request("GET", "/api/v3/time")
        return int(data["serverTime"])

    def sync_time(self) -> int:
        """
        Computes and stores local->server time offset.
        Positive offset means local clock is behind server.
        """
        local_ms = int(time.time() * 1000)
        self._time_offset_ms = self._server_time_ms() - local_ms
        return self._time_offset_ms

    def _signed_request(self, method: str, path: str, params: dict | None = None):
        if self.credentials is None:
            raise ValueError("Signed request without exchange credentials")

        # Orders are not retried on transport failure: a lost response may
        # still have filled, and a retry would double the position.
        retry = method == "GET"

        for resynced in (False, True):
            p = dict(params or {})
            p["timestamp"] = int(time.time() * 1000) + int(self._time_offset_ms)
            p["recvWindow"] = self.recv_window
            query = signed_query(self.credentials.api_secret, p)
            try:
                return self._request(
                    method,
                    f"{path}?{query}",
                    headers={"X-MBX-APIKEY": self.credentials.api_key},
                    retry=retry,
                )
            except ExchangeRejectedError as e:
                # -1021: timestamp outside recvWindow -> resync and retry once
                if e.code == -1021 and not resynced:
                    self.sync_time()
                    continue
                raise

    # ------------------------------------------------------------------
    # Public market data
    # ------------------------------------------------------------------
    def last_price(self, symbol: str) -> float:
        data = self._request(
            "GET", "/api/v3/ticker/price", params={"symbol": symbol.upper()}
        )
        return float(data["price"])

    def klines(self, symbol: str, interval: str = "5m", limit: int = 50) -> List[Kline]:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}
        rows = self._request("GET", "/api/v3/klines", params=params) or []
        return [parse_kline(r) for r in rows]

    def symbol_info(self, symbol: str) -> SymbolInfo:
        symbol = symbol.upper()
        now = time.time()
        with self._info_lock:
            cached = self._symbol_info_cache.get(symbol)
            if cached and (now - cached[0]) < settings.EXCHANGE_INFO_TTL_SECONDS:
                return cached[1]

        data = self._request("GET", "/api/v3/exchangeInfo", params={"symbol": symbol})
        # missing filter -> 0.0; the buy path applies DEFAULT_MIN_NOTIONAL itself
        info = extract_symbol_info(data or {}, symbol, 0.0)

        with self._info_lock:
            self._symbol_info_cache[symbol] = (now, info)
        return info

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------
    def free_balance(self, asset: str) -> float:
        data = self._signed_request("GET", "/api/v3/account", {"omitZeroBalances": "true"})
        for b in (data or {}).get("balances", []):
            if (b.get("asset") or "").upper() == asset.upper():
                return float(b.get("free", 0) or 0)
        return 0.0

    def check_buy_availability(
        self, symbol: str, quantity: float, price: float
    ) -> BuyAvailability:
        info = self.symbol_info(symbol)
        required = float(quantity) * float(price)
        available = self.free_balance(info.quote_asset)
        return BuyAvailability(
            can_buy=available >= required,
            quote_asset=info.quote_asset,
            available_balance=available,
            required=required,
        )

    def check_sell_availability(self, symbol: str, quantity: float) -> SellAvailability:
        info = self.symbol_info(symbol)
        available = self.free_balance(info.base_asset)
        return SellAvailability(
            can_sell=available >= float(quantity),
            base_asset=info.base_asset,
            available_balance=available,
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def _place_market(self, symbol: str, side: str, params: dict) -> OrderResult:
        base = {
            "symbol": symbol.upper(),
            "side": side,
            "type": "MARKET",
            "newOrderRespType": "FULL",
        }
        try:
            data = self._signed_request("POST", "/api/v3/order", {**base, **params})
        except (ExchangeRejectedError, TransientNetworkError) as e:
            log.warning("market %s %s failed: %s", side, symbol, e)
            return OrderRejected(error=str(e))
        return OrderPlaced(order=parse_order(data or {}, side))

    def place_buy_order(self, symbol: str, quote_order_qty: float) -> OrderResult:
        # quoteOrderQty spends a quote amount; precision beyond 8 dp is rejected
        return self._place_market(
            symbol, "BUY", {"quoteOrderQty": f"{float(quote_order_qty):.8f}".rstrip("0").rstrip(".")}
        )

    def place_sell_order(self, symbol: str, quantity: float) -> OrderResult:
        info = self.symbol_info(symbol)
        return self._place_market(
            symbol, "SELL", {"quantity": format_qty(quantity, info.step_size)}
        )
