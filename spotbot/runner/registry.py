from __future__ import annotations

import threading
from typing import Dict, Optional

from spotbot.runner.models import BotConfig


class BotRegistry:
    """In-memory map user_id -> BotConfig. Nothing survives a restart."""

    def __init__(self):
        self._lock = threading.Lock()
        self._bots: Dict[str, BotConfig] = {}

    def activate(self, user_id: str, config: BotConfig) -> bool:
        with self._lock:
            if user_id in self._bots:
                return False
            self._bots[user_id] = config.stamped()
            return True

    def deactivate(self, user_id: str) -> bool:
        with self._lock:
            return self._bots.pop(user_id, None) is not None

    def get(self, user_id: str) -> Optional[BotConfig]:
        with self._lock:
            return self._bots.get(user_id)

    def snapshot(self) -> Dict[str, BotConfig]:
        with self._lock:
            return dict(self._bots)

    def __len__(self) -> int:
        with self._lock:
            return len(self._bots)
