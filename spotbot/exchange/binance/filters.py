from __future__ import annotations

from decimal import Decimal, ROUND_DOWN

from spotbot.exchange.models import SymbolInfo


def _get_filter(symbol_info: dict, filter_type: str) -> dict | None:
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == filter_type:
            return f
    return None


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def extract_symbol_info(
    exchange_info: dict, symbol: str, default_min_notional: float = 0.0
) -> SymbolInfo:
    """
    Spot exchangeInfo -> SymbolInfo.

    LOT_SIZE gives minQty/stepSize. Min notional lives in NOTIONAL on current
    spot symbols and MIN_NOTIONAL on older ones; either may be absent.
    """
    symbol = symbol.upper()

    for s in exchange_info.get("symbols", []):
        if (s.get("symbol") or "").upper() != symbol:
            continue

        lot = _get_filter(s, "LOT_SIZE")
        if not lot:
            raise ValueError(f"LOT_SIZE filter not found for {symbol}")

        notional = _get_filter(s, "NOTIONAL") or _get_filter(s, "MIN_NOTIONAL")
        min_notional = float(default_min_notional)
        if notional and notional.get("minNotional") is not None:
            min_notional = float(notional["minNotional"])

        price_filter = _get_filter(s, "PRICE_FILTER")
        tick = float(price_filter["tickSize"]) if price_filter else 0.0

        return SymbolInfo(
            symbol=symbol,
            base_asset=s.get("baseAsset", ""),
            quote_asset=s.get("quoteAsset", ""),
            min_qty=float(lot["minQty"]),
            step_size=float(lot["stepSize"]),
            min_notional=min_notional,
            tick_size=tick,
        )

    raise ValueError(f"Symbol not found in exchangeInfo: {symbol}")


def round_qty(qty: float, step_size) -> Decimal:
    """
    Round quantity DOWN to nearest valid stepSize.
    A non-positive step leaves the quantity untouched.
    """
    q = _to_decimal(qty)
    step = _to_decimal(step_size)
    if step <= 0:
        return q
    return (q / step).to_integral_value(rounding=ROUND_DOWN) * step


def _float_quantize(value: Decimal, step) -> float:
    """
    Decimal -> float, quantized to the step's decimal places so the result
    prints and compares like the exchange expects (0.012, not 0.011999...).
    """
    step_d = _to_decimal(step)
    places = max(0, -step_d.normalize().as_tuple().exponent)
    return float(value.quantize(Decimal("1").scaleb(-places), rounding=ROUND_DOWN))


def round_qty_to_step(qty: float, step_size: float) -> float:
    if _to_decimal(step_size) <= 0:
        return float(qty)
    return _float_quantize(round_qty(qty, step_size), step_size)


def format_qty(qty: float, step_size: float) -> str:
    """Plain decimal string for order params (no scientific notation)."""
    d = round_qty(qty, step_size) if _to_decimal(step_size) > 0 else _to_decimal(qty)
    return format(d.normalize(), "f")
