from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from spotbot.strategy.base import NO_SIGNAL, Action, IndicatorSnapshot, Signal


@dataclass(frozen=True)
class RuleWeights:
    """
    Weight each rule adds to its side. Each side can reach at most
    trend + rsi_extreme + macd_sign + macd_slope, so that sum is the
    normaliser for confidence.
    """

    trend: float = 0.4
    rsi_extreme: float = 0.3
    rsi_momentum: float = 0.2
    macd_sign: float = 0.2
    macd_slope: float = 0.1

    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    rsi_mid: float = 50.0

    @property
    def max_side(self) -> float:
        return self.trend + max(self.rsi_extreme, self.rsi_momentum) + self.macd_sign + self.macd_slope


class WeightedRuleEvaluator:
    """
    Latest-value rule set:

    - trend: EMA7 above EMA21 is bullish, below is bearish
    - RSI: oversold counts bullish (mean reversion), overbought bearish;
      inside the band, above the midline is bullish momentum, below bearish
    - MACD histogram: sign, plus slope against the previous bar
    """

    name = "weighted_rules"

    def __init__(self, weights: RuleWeights | None = None, min_confidence: float = 0.5):
        self.weights = weights or RuleWeights()
        self.min_confidence = float(min_confidence)

    def score(self, snapshot: IndicatorSnapshot) -> Dict[str, Any]:
        w = self.weights
        bull = 0.0
        bear = 0.0
        reasons: List[str] = []

        if snapshot.ema7 and snapshot.ema21:
            fast, slow = snapshot.ema7[-1], snapshot.ema21[-1]
            if fast > slow:
                bull += w.trend
                reasons.append("trend_up")
            elif fast < slow:
                bear += w.trend
                reasons.append("trend_down")

        if snapshot.rsi:
            r = snapshot.rsi[-1]
            if r <= w.rsi_oversold:
                bull += w.rsi_extreme
                reasons.append("rsi_oversold")
            elif r >= w.rsi_overbought:
                bear += w.rsi_extreme
                reasons.append("rsi_overbought")
            elif r > w.rsi_mid:
                bull += w.rsi_momentum
                reasons.append("rsi_bullish_momentum")
            elif r < w.rsi_mid:
                bear += w.rsi_momentum
                reasons.append("rsi_bearish_momentum")

        hist = snapshot.macd.histogram
        if hist:
            h = hist[-1]
            if h > 0:
                bull += w.macd_sign
                reasons.append("macd_above_signal")
            elif h < 0:
                bear += w.macd_sign
                reasons.append("macd_below_signal")
            if len(hist) >= 2:
                if h > hist[-2]:
                    bull += w.macd_slope
                    reasons.append("macd_rising")
                elif h < hist[-2]:
                    bear += w.macd_slope
                    reasons.append("macd_falling")

        return {"bull": bull, "bear": bear, "max_side": w.max_side, "reasons": reasons}

    def evaluate(self, snapshot: IndicatorSnapshot) -> Signal:
        try:
            s = self.score(snapshot)
        except (TypeError, ValueError, IndexError):
            return NO_SIGNAL

        bull, bear, max_side = s["bull"], s["bear"], s["max_side"]
        if max_side <= 0 or bull == bear:
            return NO_SIGNAL

        action = Action.BUY if bull > bear else Action.SELL
        confidence = min(1.0, max(bull, bear) / max_side)
        if confidence < self.min_confidence:
            return Signal(Action.NONE, round(confidence, 6))
        return Signal(action, round(confidence, 6))
