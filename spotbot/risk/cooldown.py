from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional


class CooldownTracker:
    """
    Last-trade timestamp per symbol.

    Keyed by symbol only, so every user trading the same symbol in this
    process shares one timer (last writer wins).
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._last_trade: Dict[str, float] = {}

    def mark(self, symbol: str, ts: Optional[float] = None) -> None:
        with self._lock:
            self._last_trade[symbol.upper()] = self._clock() if ts is None else float(ts)

    def last_trade(self, symbol: str) -> Optional[float]:
        with self._lock:
            return self._last_trade.get(symbol.upper())

    def remaining_seconds(self, symbol: str, cooldown_minutes: float) -> float:
        last = self.last_trade(symbol)
        if last is None:
            return 0.0
        left = float(cooldown_minutes) * 60.0 - (self._clock() - last)
        return max(0.0, left)

    def is_active(self, symbol: str, cooldown_minutes: float) -> bool:
        return self.remaining_seconds(symbol, cooldown_minutes) > 0.0

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._last_trade)
