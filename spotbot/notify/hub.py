from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Protocol

log = logging.getLogger("spotbot.notify")


class NotificationSink(Protocol):
    def send(self, user_id: str, payload: Dict[str, Any]) -> bool: ...


class NotificationHub:
    """
    In-process notification sink.

    Users are reachable while subscribed; `send` returns False for anyone
    else, which callers treat as a normal outcome.
    """

    def __init__(self, max_pending: int = 100):
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._queues: Dict[str, Deque[Dict[str, Any]]] = {}

    def subscribe(self, user_id: str) -> None:
        with self._lock:
            self._queues.setdefault(user_id, deque(maxlen=self.max_pending))

    def unsubscribe(self, user_id: str) -> None:
        with self._lock:
            self._queues.pop(user_id, None)

    def is_connected(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._queues

    def send(self, user_id: str, payload: Dict[str, Any]) -> bool:
        with self._lock:
            q = self._queues.get(user_id)
            if q is None:
                return False
            q.append(dict(payload))
        return True

    def drain(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            q = self._queues.get(user_id)
            if not q:
                return []
            out = list(q)
            q.clear()
        return out
