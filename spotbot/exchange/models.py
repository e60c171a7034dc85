from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Protocol, Union


@dataclass(frozen=True)
class Kline:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int


@dataclass(frozen=True)
class SymbolInfo:
    symbol: str
    base_asset: str
    quote_asset: str
    min_qty: float
    step_size: float
    min_notional: float
    tick_size: float = 0.0


@dataclass(frozen=True)
class OrderFill:
    price: float
    qty: float
    commission: float
    commission_asset: str


@dataclass(frozen=True)
class ExchangeOrder:
    order_id: str
    symbol: str
    side: str
    executed_qty: float
    cummulative_quote_qty: float
    transact_time_ms: Optional[int] = None
    fills: List[OrderFill] = field(default_factory=list)


@dataclass(frozen=True)
class OrderPlaced:
    order: ExchangeOrder
    success: Literal[True] = True


@dataclass(frozen=True)
class OrderRejected:
    error: str
    success: Literal[False] = False


OrderResult = Union[OrderPlaced, OrderRejected]


@dataclass(frozen=True)
class BuyAvailability:
    can_buy: bool
    quote_asset: str
    available_balance: float
    required: float


@dataclass(frozen=True)
class SellAvailability:
    can_sell: bool
    base_asset: str
    available_balance: float


@dataclass(frozen=True)
class ExchangeCredentials:
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return f"ExchangeCredentials(api_key={self.api_key[:4]}***)"


class MarketDataClient(Protocol):
    def last_price(self, symbol: str) -> float: ...

    def klines(self, symbol: str, interval: str, limit: int) -> List[Kline]: ...

    def symbol_info(self, symbol: str) -> SymbolInfo: ...

    def check_buy_availability(
        self, symbol: str, quantity: float, price: float
    ) -> BuyAvailability: ...

    def check_sell_availability(self, symbol: str, quantity: float) -> SellAvailability: ...

    def place_buy_order(self, symbol: str, quote_order_qty: float) -> OrderResult: ...

    def place_sell_order(self, symbol: str, quantity: float) -> OrderResult: ...
