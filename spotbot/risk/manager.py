from __future__ import annotations

import logging
from typing import List, Optional

from spotbot.core.config import settings
from spotbot.core.errors import ExchangeRejectedError, PersistenceError, TransientNetworkError
from spotbot.exchange.binance.filters import round_qty_to_step
from spotbot.exchange.models import MarketDataClient, OrderRejected, SymbolInfo
from spotbot.execution.executor import TradeExecutor
from spotbot.persistence.positions import Position, PositionStore
from spotbot.risk.cooldown import CooldownTracker
from spotbot.risk.outcomes import Reason, TradeOutcome
from spotbot.runner.models import BotConfig, SymbolConfig
from spotbot.strategy.aggregator import AggregatedSignal
from spotbot.strategy.base import Action

log = logging.getLogger("spotbot.risk")

# float sums of quote values drift; equality with the cap must still pass
_CAP_EPSILON = 1e-9


class RiskManager:
    """
    Validates an aggregated decision for one (user, symbol) and, when every
    check passes, places the market order and hands the fill to the executor.

    Rejections are ordinary outcomes (status "rejected" with a Reason), not
    exceptions. Exchange and network failures become "failed" outcomes.
    """

    def __init__(
        self,
        store: PositionStore,
        cooldowns: CooldownTracker,
        executor: TradeExecutor,
        *,
        duplicate_band_pct: Optional[float] = None,
        sell_candidate_ratio: Optional[float] = None,
        profit_floor_ratio: Optional[float] = None,
        default_min_notional: Optional[float] = None,
    ):
        self.store = store
        self.cooldowns = cooldowns
        self.executor = executor

        band = settings.DUPLICATE_BAND_PCT if duplicate_band_pct is None else duplicate_band_pct
        self.duplicate_band = float(band) / 100.0
        self.sell_candidate_ratio = float(
            settings.SELL_CANDIDATE_RATIO if sell_candidate_ratio is None else sell_candidate_ratio
        )
        self.profit_floor_ratio = float(
            settings.PROFIT_FLOOR_RATIO if profit_floor_ratio is None else profit_floor_ratio
        )
        self.default_min_notional = float(
            settings.DEFAULT_MIN_NOTIONAL if default_min_notional is None else default_min_notional
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def process_signal(
        self,
        client: MarketDataClient,
        user_id: str,
        agg: AggregatedSignal,
        config: BotConfig,
        symbol_cfg: Optional[SymbolConfig] = None,
    ) -> List[TradeOutcome]:
        if not agg.is_trade:
            return []

        symbol = agg.symbol.upper()
        side = agg.action.value

        left = self.cooldowns.remaining_seconds(symbol, config.cooldown_minutes)
        if left > 0:
            minutes_left = round(left / 60.0, 2)
            log.info("%s %s skipped: cooldown %.2f min left", side, symbol, minutes_left)
            return [
                TradeOutcome.rejected(
                    symbol, side, Reason.COOLDOWN,
                    f"cooldown active, {minutes_left} min left",
                    agg.confidence,
                    minutes_left=minutes_left,
                )
            ]

        if agg.action == Action.BUY:
            return [self._buy_guarded(client, user_id, symbol, agg.confidence, config, symbol_cfg)]
        return self._sell_guarded(client, user_id, symbol, agg.confidence)

    def _buy_guarded(self, client, user_id, symbol, confidence, config, symbol_cfg) -> TradeOutcome:
        try:
            return self.buy(client, user_id, symbol, confidence, config, symbol_cfg)
        except TransientNetworkError as e:
            log.warning("BUY %s for %s: network error: %s", symbol, user_id, e)
            return TradeOutcome.failed(symbol, "BUY", Reason.NETWORK_ERROR, str(e), confidence)
        except ExchangeRejectedError as e:
            log.warning("BUY %s for %s: exchange error: %s", symbol, user_id, e)
            return TradeOutcome.failed(symbol, "BUY", Reason.EXCHANGE_ERROR, str(e), confidence)

    def _sell_guarded(self, client, user_id, symbol, confidence) -> List[TradeOutcome]:
        try:
            return self.sell(client, user_id, symbol, confidence)
        except TransientNetworkError as e:
            log.warning("SELL %s for %s: network error: %s", symbol, user_id, e)
            return [TradeOutcome.failed(symbol, "SELL", Reason.NETWORK_ERROR, str(e), confidence)]
        except ExchangeRejectedError as e:
            log.warning("SELL %s for %s: exchange error: %s", symbol, user_id, e)
            return [TradeOutcome.failed(symbol, "SELL", Reason.EXCHANGE_ERROR, str(e), confidence)]

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    @staticmethod
    def check_price_band(price: float, symbol_cfg: Optional[SymbolConfig]) -> Optional[Reason]:
        if symbol_cfg is None:
            return None
        if symbol_cfg.lower_limit is not None and price < symbol_cfg.lower_limit:
            return Reason.PRICE_BELOW_LOWER_LIMIT
        if symbol_cfg.upper_limit is not None and price > symbol_cfg.upper_limit:
            return Reason.PRICE_ABOVE_UPPER_LIMIT
        return None

    def min_notional_for(self, info: SymbolInfo) -> float:
        return info.min_notional if info.min_notional > 0 else self.default_min_notional

    def max_investment_exceeded(self, user_id: str, amount: float, cap: float) -> tuple[bool, Optional[float]]:
        """(exceeded, invested). Fails closed when the total cannot be read."""
        try:
            invested = self.store.open_bot_quote_total(user_id)
        except PersistenceError as e:
            log.error("max investment check failed for %s, refusing buy: %s", user_id, e)
            return True, None
        return invested + amount > cap + _CAP_EPSILON, invested

    def duplicate_in_band(self, user_id: str, symbol: str, price: float) -> bool:
        low = price * (1.0 - self.duplicate_band)
        high = price * (1.0 + self.duplicate_band)
        try:
            return self.store.has_open_in_price_range(user_id, symbol, low, high)
        except PersistenceError as e:
            log.error("duplicate check failed for %s/%s, refusing buy: %s", user_id, symbol, e)
            return True

    # ------------------------------------------------------------------
    # Buy path
    # ------------------------------------------------------------------
    def buy(
        self,
        client: MarketDataClient,
        user_id: str,
        symbol: str,
        confidence: float,
        config: BotConfig,
        symbol_cfg: Optional[SymbolConfig] = None,
    ) -> TradeOutcome:
        price = client.last_price(symbol)

        band = self.check_price_band(price, symbol_cfg)
        if band is not None:
            limit = symbol_cfg.lower_limit if band == Reason.PRICE_BELOW_LOWER_LIMIT else symbol_cfg.upper_limit
            return TradeOutcome.rejected(
                symbol, "BUY", band, f"price {price} outside configured limit {limit}",
                confidence, price=price, limit=limit,
            )

        info = client.symbol_info(symbol)
        min_notional = self.min_notional_for(info)
        amount = float(config.trade_amount)
        if amount < min_notional:
            log.info("%s: trade amount %s below min notional, using %s", symbol, amount, min_notional)
            amount = min_notional

        exceeded, invested = self.max_investment_exceeded(user_id, amount, config.max_investment)
        if exceeded:
            return TradeOutcome.rejected(
                symbol, "BUY", Reason.MAX_INVESTMENT,
                f"max investment {config.max_investment} reached",
                confidence, invested=invested, amount=amount, cap=config.max_investment,
            )

        if self.duplicate_in_band(user_id, symbol, price):
            return TradeOutcome.rejected(
                symbol, "BUY", Reason.DUPLICATE_POSITION,
                f"open position within ±{self.duplicate_band * 100:g}% of {price}",
                confidence, price=price,
            )

        qty = amount / price
        avail = client.check_buy_availability(symbol, qty, price)
        if not avail.can_buy:
            return TradeOutcome.rejected(
                symbol, "BUY", Reason.INSUFFICIENT_QUOTE_BALANCE,
                f"insufficient {avail.quote_asset} balance",
                confidence, available=avail.available_balance, required=avail.required,
            )

        res = client.place_buy_order(symbol, amount)
        if isinstance(res, OrderRejected):
            log.warning("BUY %s for %s rejected by exchange: %s", symbol, user_id, res.error)
            return TradeOutcome.failed(symbol, "BUY", Reason.EXCHANGE_ERROR, res.error, confidence)

        self.cooldowns.mark(symbol)
        log.info("BUY %s for %s executed (order %s, amount %s)", symbol, user_id, res.order.order_id, amount)
        return self.executor.record_buy(user_id, symbol, res.order, price, confidence)

    # ------------------------------------------------------------------
    # Sell path
    # ------------------------------------------------------------------
    def sell(
        self,
        client: MarketDataClient,
        user_id: str,
        symbol: str,
        confidence: float,
    ) -> List[TradeOutcome]:
        avail = client.check_sell_availability(symbol, 0.0)
        balance = float(avail.available_balance)
        if balance <= 0:
            return [
                TradeOutcome.rejected(
                    symbol, "SELL", Reason.NO_BASE_BALANCE,
                    f"no {avail.base_asset} balance", confidence,
                )
            ]

        price = client.last_price(symbol)
        bound = price * self.sell_candidate_ratio
        try:
            candidates = self.store.open_bot_positions_below(user_id, symbol, bound)
        except PersistenceError as e:
            log.error("sell candidate query failed for %s/%s: %s", user_id, symbol, e)
            candidates = []

        if not candidates:
            return [
                TradeOutcome.rejected(
                    symbol, "SELL", Reason.NO_ELIGIBLE_POSITIONS,
                    f"no open position with entry below {bound}", confidence, price=price,
                )
            ]

        needed = sum(p.quantity for p in candidates)
        if balance < needed:
            return [
                TradeOutcome.rejected(
                    symbol, "SELL", Reason.INSUFFICIENT_BATCH_BALANCE,
                    f"{avail.base_asset} balance {balance} < {needed} required by {len(candidates)} position(s)",
                    confidence, available=balance, required=needed, positions=len(candidates),
                )
            ]

        info = client.symbol_info(symbol)
        outcomes: List[TradeOutcome] = []
        for pos in candidates:
            try:
                outcomes.append(self.sell_position(client, user_id, pos, price, info, confidence))
            except TransientNetworkError as e:
                outcomes.append(
                    TradeOutcome.failed(symbol, "SELL", Reason.NETWORK_ERROR, str(e), confidence, position_id=pos.id)
                )
            except ExchangeRejectedError as e:
                outcomes.append(
                    TradeOutcome.failed(symbol, "SELL", Reason.EXCHANGE_ERROR, str(e), confidence, position_id=pos.id)
                )
            except Exception as e:
                # earlier legs already filled; keep their outcomes
                log.exception("SELL %s position %s for %s failed", symbol, pos.id, user_id)
                outcomes.append(
                    TradeOutcome.failed(
                        symbol, "SELL", Reason.UNEXPECTED_ERROR, f"{type(e).__name__}: {e}",
                        confidence, position_id=pos.id,
                    )
                )
        return outcomes

    def sell_position(
        self,
        client: MarketDataClient,
        user_id: str,
        pos: Position,
        price: float,
        info: SymbolInfo,
        confidence: float,
    ) -> TradeOutcome:
        """One candidate; earlier sells in the batch stand whatever happens here."""
        symbol = pos.symbol
        qty = round_qty_to_step(pos.quantity, info.step_size)

        if qty <= 0 or qty < info.min_qty:
            return TradeOutcome.rejected(
                symbol, "SELL", Reason.BELOW_MIN_QTY,
                f"quantity {qty} below min {info.min_qty}",
                confidence, position_id=pos.id, qty=qty,
            )

        notional = qty * price
        if notional < info.min_notional:
            return TradeOutcome.rejected(
                symbol, "SELL", Reason.BELOW_MIN_NOTIONAL,
                f"notional {notional} below min {info.min_notional}",
                confidence, position_id=pos.id, notional=notional,
            )

        floor = pos.entry_price * self.profit_floor_ratio
        if price < floor:
            return TradeOutcome.rejected(
                symbol, "SELL", Reason.BELOW_PROFIT_FLOOR,
                f"price {price} below profit floor {floor}",
                confidence, position_id=pos.id, entry_price=pos.entry_price,
            )

        res = client.place_sell_order(symbol, qty)
        if isinstance(res, OrderRejected):
            log.warning("SELL %s position %s rejected by exchange: %s", symbol, pos.id, res.error)
            return TradeOutcome.failed(
                symbol, "SELL", Reason.EXCHANGE_ERROR, res.error, confidence, position_id=pos.id
            )

        self.cooldowns.mark(symbol)
        log.info("SELL %s position %s for %s executed (order %s)", symbol, pos.id, user_id, res.order.order_id)
        return self.executor.record_sell(user_id, pos, res.order, price, qty, confidence)
