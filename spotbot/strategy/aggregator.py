from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Sequence

from spotbot.strategy.base import Action, Signal


@dataclass(frozen=True)
class AggregatedSignal:
    symbol: str
    action: Action
    confidence: float
    buy_score: float
    sell_score: float
    per_interval: Dict[str, Signal] = field(default_factory=dict)

    @property
    def is_trade(self) -> bool:
        return self.action in (Action.BUY, Action.SELL)


def aggregate_signals(
    symbol: str,
    intervals: Sequence[str],
    signals: Mapping[str, Signal],
    min_confidence: float = 0.5,
) -> AggregatedSignal:
    """
    Fuse per-interval signals for one symbol.

    Each side's confidence sum is divided by the number of *configured*
    intervals, so a signal seen on one timeframe only is diluted by the
    others. A missing interval (failed fetch) counts like NONE.
    """
    configured = list(intervals)
    n = len(configured)
    per_interval = {i: signals[i] for i in configured if i in signals}
    if n == 0:
        return AggregatedSignal(symbol, Action.NONE, 0.0, 0.0, 0.0, per_interval)

    buy_sum = 0.0
    sell_sum = 0.0
    for sig in per_interval.values():
        if not sig.is_trade or sig.confidence < min_confidence:
            continue
        if sig.action == Action.BUY:
            buy_sum += sig.confidence
        else:
            sell_sum += sig.confidence

    buy_avg = buy_sum / n
    sell_avg = sell_sum / n

    if buy_avg > sell_avg and buy_avg >= min_confidence:
        return AggregatedSignal(symbol, Action.BUY, buy_avg, buy_avg, sell_avg, per_interval)
    if sell_avg > buy_avg and sell_avg >= min_confidence:
        return AggregatedSignal(symbol, Action.SELL, sell_avg, buy_avg, sell_avg, per_interval)
    return AggregatedSignal(
        symbol, Action.NONE, max(buy_avg, sell_avg), buy_avg, sell_avg, per_interval
    )
