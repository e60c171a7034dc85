from __future__ import annotations

from contextvars import ContextVar
from typing import Optional

# Context-local tick id. Worker threads started inside a tick do not inherit
# it; only the scheduler thread stamps events with it.
_current_cycle_id: ContextVar[Optional[str]] = ContextVar(
    "current_cycle_id", default=None
)


def set_cycle_id(cycle_id: str) -> None:
    _current_cycle_id.set(cycle_id)


def get_cycle_id() -> Optional[str]:
    return _current_cycle_id.get()


def clear_cycle_id() -> None:
    _current_cycle_id.set(None)
