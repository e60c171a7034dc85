import pytest

from spotbot.strategy.base import Action, IndicatorSnapshot, MacdSeries
from spotbot.strategy.evaluator import RuleWeights, WeightedRuleEvaluator


def _snap(ema7, ema21, rsi, hist):
    return IndicatorSnapshot(
        closes=[1.0],
        ema7=[ema7] if ema7 is not None else [],
        ema21=[ema21] if ema21 is not None else [],
        rsi=[rsi] if rsi is not None else [],
        macd=MacdSeries(macd=list(hist), signal=[0.0] * len(hist), histogram=list(hist)),
    )


def test_all_bullish_rules_give_buy():
    sig = WeightedRuleEvaluator().evaluate(_snap(10.0, 9.0, 55.0, [0.1, 0.2]))
    assert sig.action == Action.BUY
    assert sig.confidence == pytest.approx(0.9)


def test_all_bearish_rules_give_sell():
    sig = WeightedRuleEvaluator().evaluate(_snap(9.0, 10.0, 45.0, [-0.1, -0.2]))
    assert sig.action == Action.SELL
    assert sig.confidence == pytest.approx(0.9)


def test_oversold_rsi_counts_bullish():
    ev = WeightedRuleEvaluator()
    s = ev.score(_snap(None, None, 25.0, []))
    assert s["bull"] == pytest.approx(0.3)
    assert "rsi_oversold" in s["reasons"]


def test_tie_gives_none():
    # trend up (0.4) + macd rising (0.1) vs overbought (0.3) + negative histogram (0.2)
    sig = WeightedRuleEvaluator().evaluate(_snap(10.0, 9.0, 75.0, [-0.1, -0.05]))
    assert sig.action == Action.NONE


def test_below_threshold_gives_none():
    sig = WeightedRuleEvaluator().evaluate(_snap(10.0, 9.0, 50.0, []))
    assert sig.action == Action.NONE
    assert sig.confidence == pytest.approx(0.4)


def test_empty_snapshot_never_raises():
    sig = WeightedRuleEvaluator().evaluate(_snap(None, None, None, []))
    assert sig.action == Action.NONE
    assert sig.confidence == 0.0


def test_custom_weights_and_threshold():
    ev = WeightedRuleEvaluator(weights=RuleWeights(trend=1.0), min_confidence=0.3)
    sig = ev.evaluate(_snap(10.0, 9.0, 50.0, []))
    assert sig.action == Action.BUY
    assert 0.0 <= sig.confidence <= 1.0
