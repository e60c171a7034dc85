from __future__ import annotations

from typing import List, Sequence

from spotbot.strategy.base import IndicatorSnapshot, MacdSeries

EMA_FAST = 7
EMA_SLOW = 21
RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9


def ema_series(values: Sequence[float], period: int) -> List[float]:
    """
    EMA with k = 2/(n+1), seeded with the SMA of the first n values.
    Output has len(values) - period + 1 items (empty if not enough data).
    """
    if period <= 0 or len(values) < period:
        return []
    k = 2.0 / (period + 1)
    e = sum(values[:period]) / float(period)
    out = [e]
    for v in values[period:]:
        e = v * k + e * (1 - k)
        out.append(e)
    return out


def rsi_series(closes: Sequence[float], period: int = RSI_PERIOD) -> List[float]:
    """
    Wilder RSI. First value uses the plain average gain/loss of the first
    `period` changes, later values use Wilder smoothing.
    Output has len(closes) - period items.
    """
    if period <= 0 or len(closes) < period + 1:
        return []

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        diff = closes[i] - closes[i - 1]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff
    avg_gain = gains / period
    avg_loss = losses / period

    def value(g: float, l: float) -> float:
        if l == 0:
            return 100.0 if g > 0 else 50.0
        rs = g / l
        return 100.0 - (100.0 / (1.0 + rs))

    out = [value(avg_gain, avg_loss)]
    for i in range(period + 1, len(closes)):
        diff = closes[i] - closes[i - 1]
        gain = diff if diff > 0 else 0.0
        loss = -diff if diff < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out.append(value(avg_gain, avg_loss))
    return out


def macd_series(
    closes: Sequence[float],
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> MacdSeries:
    """
    MACD = EMA(fast) - EMA(slow); signal = EMA(signal) of MACD;
    histogram = MACD - signal (aligned to the tail of the MACD line).
    """
    slow_e = ema_series(closes, slow)
    if not slow_e:
        return MacdSeries()
    fast_e = ema_series(closes, fast)
    # both end on the last close; drop the fast EMA's extra head
    fast_e = fast_e[len(fast_e) - len(slow_e):]
    line = [f - s for f, s in zip(fast_e, slow_e)]

    sig = ema_series(line, signal)
    tail = line[len(line) - len(sig):] if sig else []
    hist = [m - s for m, s in zip(tail, sig)]
    return MacdSeries(macd=line, signal=sig, histogram=hist)


def compute_snapshot(closes: Sequence[float]) -> IndicatorSnapshot:
    closes = [float(c) for c in closes]
    return IndicatorSnapshot(
        closes=closes,
        ema7=ema_series(closes, EMA_FAST),
        ema21=ema_series(closes, EMA_SLOW),
        rsi=rsi_series(closes, RSI_PERIOD),
        macd=macd_series(closes),
    )
