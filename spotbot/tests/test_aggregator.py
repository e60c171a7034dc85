import pytest

from spotbot.strategy.aggregator import aggregate_signals
from spotbot.strategy.base import Action, Signal


def test_single_interval_signal_is_dampened_below_threshold():
    sigs = {
        "1m": Signal(Action.BUY, 0.9),
        "5m": Signal(Action.NONE, 0.0),
        "15m": Signal(Action.NONE, 0.0),
    }
    agg = aggregate_signals("BTCUSDC", ["1m", "5m", "15m"], sigs)
    assert agg.buy_score == pytest.approx(0.3)
    assert agg.action == Action.NONE
    assert not agg.is_trade


def test_corroborated_buy():
    sigs = {"3m": Signal(Action.BUY, 0.8), "5m": Signal(Action.BUY, 0.6)}
    agg = aggregate_signals("BTCUSDC", ["3m", "5m"], sigs)
    assert agg.action == Action.BUY
    assert agg.confidence == pytest.approx(0.7)


def test_weak_signals_are_discarded():
    sigs = {"3m": Signal(Action.SELL, 0.45), "5m": Signal(Action.SELL, 0.9)}
    agg = aggregate_signals("BTCUSDC", ["3m", "5m"], sigs)
    assert agg.sell_score == pytest.approx(0.45)
    assert agg.action == Action.NONE


def test_equal_sides_give_no_trade():
    sigs = {"3m": Signal(Action.BUY, 1.0), "5m": Signal(Action.SELL, 1.0)}
    agg = aggregate_signals("BTCUSDC", ["3m", "5m"], sigs)
    assert agg.action == Action.NONE


def test_missing_interval_counts_as_none():
    # 5m failed to fetch: still divides by 2
    agg = aggregate_signals("BTCUSDC", ["3m", "5m"], {"3m": Signal(Action.SELL, 0.9)})
    assert agg.sell_score == pytest.approx(0.45)
    assert agg.action == Action.NONE
    assert set(agg.per_interval) == {"3m"}


def test_no_intervals():
    agg = aggregate_signals("BTCUSDC", [], {})
    assert agg.action == Action.NONE
