from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol


class Action(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    NONE = "NONE"


@dataclass(frozen=True)
class Signal:
    action: Action
    confidence: float

    @property
    def is_trade(self) -> bool:
        return self.action in (Action.BUY, Action.SELL)


NO_SIGNAL = Signal(Action.NONE, 0.0)


@dataclass
class MacdSeries:
    macd: List[float] = field(default_factory=list)
    signal: List[float] = field(default_factory=list)
    histogram: List[float] = field(default_factory=list)


@dataclass
class IndicatorSnapshot:
    """Indicator arrays for one (symbol, interval), each aligned to the tail of closes."""

    closes: List[float]
    ema7: List[float]
    ema21: List[float]
    rsi: List[float]
    macd: MacdSeries

    @property
    def last_close(self) -> Optional[float]:
        return self.closes[-1] if self.closes else None

    def latest(self) -> dict:
        def last(xs: List[float]) -> Optional[float]:
            return xs[-1] if xs else None

        return {
            "close": self.last_close,
            "ema7": last(self.ema7),
            "ema21": last(self.ema21),
            "rsi": last(self.rsi),
            "macd": last(self.macd.macd),
            "macd_signal": last(self.macd.signal),
            "macd_histogram": last(self.macd.histogram),
        }


class SignalEvaluator(Protocol):
    name: str

    def evaluate(self, snapshot: IndicatorSnapshot) -> Signal: ...
