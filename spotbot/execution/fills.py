from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from spotbot.exchange.models import ExchangeOrder


@dataclass(frozen=True)
class FillSummary:
    avg_price: float
    qty: float
    quote_value: float
    commission: float
    commission_asset: Optional[str]
    other_commissions: Dict[str, float] = field(default_factory=dict)


def summarize_fills(
    order: ExchangeOrder,
    fallback_price: float,
    quote_assets: Iterable[str] = ("USDC", "USDT"),
) -> FillSummary:
    """
    Collapse an order's fills into one realized price and commission.

    Only commission paid in a quote stable-asset is summed; anything else
    (BNB, the base asset) is kept per asset in other_commissions and never
    converted. Without fills the fallback price is used.
    """
    quote_assets = {a.upper() for a in quote_assets}

    total_qty = 0.0
    total_value = 0.0
    commission = 0.0
    commission_asset: Optional[str] = None
    other: Dict[str, float] = {}

    for f in order.fills:
        total_qty += f.qty
        total_value += f.qty * f.price

        asset = (f.commission_asset or "").upper()
        if asset in quote_assets:
            commission += f.commission
            commission_asset = asset  # a quote asset overrides an earlier non-quote one
        elif asset:
            other[asset] = other.get(asset, 0.0) + f.commission
            if commission_asset is None:
                commission_asset = asset

    avg_price = (total_value / total_qty) if total_qty > 0 else float(fallback_price)

    qty = order.executed_qty if order.executed_qty > 0 else total_qty
    if order.cummulative_quote_qty > 0:
        quote_value = order.cummulative_quote_qty
    else:
        quote_value = qty * avg_price

    return FillSummary(
        avg_price=float(avg_price),
        qty=float(qty),
        quote_value=float(quote_value),
        commission=float(commission),
        commission_asset=commission_asset,
        other_commissions=other,
    )
