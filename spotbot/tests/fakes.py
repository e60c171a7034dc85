"""Hand-written exchange fakes shared by the risk, scheduler and API tests."""

import threading
import time

from spotbot.core.errors import TransientNetworkError
from spotbot.exchange.models import (
    BuyAvailability,
    ExchangeOrder,
    Kline,
    OrderFill,
    OrderPlaced,
    OrderRejected,
    SellAvailability,
    SymbolInfo,
)


def make_klines(closes):
    return [
        Kline(open_time=i * 60_000, open=c, high=c, low=c, close=c, volume=1.0, close_time=i * 60_000 + 59_999)
        for i, c in enumerate(closes)
    ]


class FakeSpotClient:
    """Minimal fake spot client: fixed price, fixed balances, every order fills at the price."""

    def __init__(
        self,
        *,
        price=100.0,
        quote_balance=1_000.0,
        base_balance=0.0,
        min_qty=0.0001,
        step_size=0.0001,
        min_notional=5.0,
        reject_orders=False,
        commission_asset="USDC",
        klines=None,
    ):
        self.price = float(price)
        self.quote_balance = float(quote_balance)
        self.base_balance = float(base_balance)
        self.info = SymbolInfo(
            symbol="BTCUSDC",
            base_asset="BTC",
            quote_asset="USDC",
            min_qty=min_qty,
            step_size=step_size,
            min_notional=min_notional,
        )
        self.reject_orders = reject_orders
        self.commission_asset = commission_asset
        self.klines_by_pair = dict(klines or {})

        self.buy_calls = []
        self.sell_calls = []
        self.kline_calls = []
        self._next_id = 1
        self._lock = threading.Lock()

    # --- market data ---
    def last_price(self, symbol):
        return self.price

    def symbol_info(self, symbol):
        return SymbolInfo(
            symbol=symbol.upper(),
            base_asset=symbol.upper().replace("USDC", ""),
            quote_asset="USDC",
            min_qty=self.info.min_qty,
            step_size=self.info.step_size,
            min_notional=self.info.min_notional,
        )

    def klines(self, symbol, interval, limit):
        with self._lock:
            self.kline_calls.append((symbol, interval, limit))
        rows = self.klines_by_pair.get((symbol, interval))
        if rows is None:
            raise TransientNetworkError(f"no candles for {symbol} {interval}")
        return rows

    # --- balances ---
    def check_buy_availability(self, symbol, quantity, price):
        required = quantity * price
        return BuyAvailability(
            can_buy=self.quote_balance >= required,
            quote_asset="USDC",
            available_balance=self.quote_balance,
            required=required,
        )

    def check_sell_availability(self, symbol, quantity):
        return SellAvailability(
            can_sell=self.base_balance >= quantity,
            base_asset=symbol.upper().replace("USDC", ""),
            available_balance=self.base_balance,
        )

    # --- orders ---
    def _order(self, symbol, side, qty):
        oid = str(self._next_id)
        self._next_id += 1
        quote = qty * self.price
        return ExchangeOrder(
            order_id=oid,
            symbol=symbol,
            side=side,
            executed_qty=qty,
            cummulative_quote_qty=quote,
            transact_time_ms=int(time.time() * 1000),
            fills=[OrderFill(price=self.price, qty=qty, commission=quote * 0.001, commission_asset=self.commission_asset)],
        )

    def place_buy_order(self, symbol, quote_order_qty):
        self.buy_calls.append((symbol, quote_order_qty))
        if self.reject_orders:
            return OrderRejected(error="Binance HTTP 400: Account has insufficient balance")
        qty = round(quote_order_qty / self.price, 8)
        self.quote_balance -= quote_order_qty
        self.base_balance += qty
        return OrderPlaced(order=self._order(symbol, "BUY", qty))

    def place_sell_order(self, symbol, quantity):
        self.sell_calls.append((symbol, quantity))
        if self.reject_orders:
            return OrderRejected(error="Binance HTTP 400: Filter failure: LOT_SIZE")
        self.base_balance -= quantity
        self.quote_balance += quantity * self.price
        return OrderPlaced(order=self._order(symbol, "SELL", quantity))


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = float(now)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
