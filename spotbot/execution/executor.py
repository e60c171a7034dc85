from __future__ import annotations

import logging
from typing import Optional

from spotbot.core.config import settings
from spotbot.core.errors import PersistenceError
from spotbot.exchange.models import ExchangeOrder
from spotbot.execution.fills import FillSummary, summarize_fills
from spotbot.persistence.audit import Audit
from spotbot.persistence.db import ms_to_iso
from spotbot.persistence.positions import Position, PositionStore, Sale
from spotbot.risk.outcomes import EXECUTED, TradeOutcome

log = logging.getLogger("spotbot.executor")


class TradeExecutor:
    """
    Turns a filled exchange order into local records.

    Exactly one Position per executed buy, one Sale per executed sell leg.
    The exchange trade has already happened when these run, so a failed
    write is reported (db_saved=False) and never undone.
    """

    def __init__(self, store: PositionStore, audit: Optional[Audit] = None):
        self.store = store
        self.audit = audit

    def _summary(self, order: ExchangeOrder, fallback_price: float) -> FillSummary:
        return summarize_fills(order, fallback_price, settings.QUOTE_COMMISSION_ASSETS)

    def _inconsistency(self, user_id: str, symbol: str, side: str, order: ExchangeOrder, err: Exception, **extra) -> None:
        log.critical(
            "%s %s for user %s filled on exchange (order %s) but was not saved: %s",
            side, symbol, user_id, order.order_id, err,
        )
        if self.audit is None:
            return
        self.audit.event(
            event_type="PERSISTENCE_INCONSISTENCY",
            user_id=user_id,
            symbol=symbol,
            action=side,
            details={
                "order_id": order.order_id,
                "executed_qty": order.executed_qty,
                "quote_qty": order.cummulative_quote_qty,
                "error": f"{type(err).__name__}: {err}",
                **extra,
            },
        )

    # ---------------- BUY ----------------

    def record_buy(
        self,
        user_id: str,
        symbol: str,
        order: ExchangeOrder,
        fallback_price: float,
        confidence: float = 0.0,
    ) -> TradeOutcome:
        fs = self._summary(order, fallback_price)
        pos = Position(
            id=None,
            user_id=user_id,
            symbol=symbol,
            entry_price=fs.avg_price,
            quantity=fs.qty,
            quote_value=fs.quote_value,
            commission=fs.commission,
            commission_asset=fs.commission_asset,
            opened_at=ms_to_iso(order.transact_time_ms),
            order_id=order.order_id or None,
        )

        outcome = TradeOutcome(
            symbol=symbol,
            side="BUY",
            status=EXECUTED,
            confidence=confidence,
            message=f"bought {fs.qty} {symbol} @ {fs.avg_price}",
            order=order,
            details={
                "price": fs.avg_price,
                "qty": fs.qty,
                "quote_value": fs.quote_value,
                "commission": fs.commission,
                "commission_asset": fs.commission_asset,
                "other_commissions": fs.other_commissions,
            },
        )

        try:
            outcome.position_id = self.store.insert_position(pos)
            outcome.db_saved = True
        except PersistenceError as e:
            outcome.db_saved = False
            self._inconsistency(user_id, symbol, "BUY", order, e)
        return outcome

    # ---------------- SELL ----------------

    def record_sell(
        self,
        user_id: str,
        position: Position,
        order: ExchangeOrder,
        fallback_price: float,
        sold_qty: float,
        confidence: float = 0.0,
    ) -> TradeOutcome:
        fs = self._summary(order, fallback_price)
        qty = order.executed_qty if order.executed_qty > 0 else float(sold_qty)
        sale_total = order.cummulative_quote_qty if order.cummulative_quote_qty > 0 else qty * fs.avg_price

        cost = position.entry_price * qty
        profit = sale_total - cost
        profit_pct = (profit / cost * 100.0) if cost > 0 else 0.0

        sale = Sale(
            id=None,
            position_id=int(position.id),
            user_id=user_id,
            symbol=position.symbol,
            exit_price=fs.avg_price,
            quantity=qty,
            commission=fs.commission,
            commission_asset=fs.commission_asset,
            profit=profit,
            profit_pct=profit_pct,
            closed_at=ms_to_iso(order.transact_time_ms),
            order_id=order.order_id or None,
        )

        outcome = TradeOutcome(
            symbol=position.symbol,
            side="SELL",
            status=EXECUTED,
            confidence=confidence,
            message=f"sold {qty} {position.symbol} @ {fs.avg_price} (position {position.id})",
            order=order,
            position_id=position.id,
            details={
                "price": fs.avg_price,
                "qty": qty,
                "entry_price": position.entry_price,
                "profit": profit,
                "profit_pct": profit_pct,
                "commission": fs.commission,
                "commission_asset": fs.commission_asset,
                "other_commissions": fs.other_commissions,
            },
        )

        try:
            outcome.sale_id = self.store.insert_sale(sale)
        except PersistenceError as e:
            outcome.db_saved = False
            self._inconsistency(user_id, position.symbol, "SELL", order, e, position_id=position.id)
            return outcome

        try:
            self.store.mark_closed(int(position.id))
            outcome.db_saved = True
        except PersistenceError as e:
            # the sale row exists but the position still reads open
            outcome.db_saved = False
            self._inconsistency(
                user_id, position.symbol, "SELL", order, e,
                position_id=position.id, sale_id=outcome.sale_id,
            )
        return outcome
