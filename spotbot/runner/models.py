# spotbot/runner/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from spotbot.core.config import KLINE_INTERVALS, settings
from spotbot.risk.outcomes import TradeOutcome


class SymbolConfig(BaseModel):
    symbol: str
    lower_limit: Optional[float] = Field(default=None, gt=0)
    upper_limit: Optional[float] = Field(default=None, gt=0)

    @field_validator("symbol", mode="before")
    @classmethod
    def norm_symbol(cls, v: Any) -> str:
        s = str(v or "").strip().upper()
        if not s:
            raise ValueError("symbol must not be empty")
        return s

    @model_validator(mode="after")
    def check_band(self) -> "SymbolConfig":
        if (
            self.lower_limit is not None
            and self.upper_limit is not None
            and self.lower_limit > self.upper_limit
        ):
            raise ValueError(
                f"{self.symbol}: lower_limit {self.lower_limit} > upper_limit {self.upper_limit}"
            )
        return self


def _default_symbols() -> List[SymbolConfig]:
    return [SymbolConfig(symbol=s) for s in settings.SUPPORTED_SYMBOLS]


class BotConfig(BaseModel):
    """Per-user bot configuration. Lives in memory only; a restart drops it."""

    trade_amount: float = Field(default_factory=lambda: settings.DEFAULT_TRADE_AMOUNT, gt=0)
    intervals: List[str] = Field(default_factory=lambda: list(settings.DEFAULT_INTERVALS))
    symbols: List[SymbolConfig] = Field(default_factory=_default_symbols)
    candle_limit: int = Field(default_factory=lambda: settings.DEFAULT_CANDLE_LIMIT, ge=30, le=1000)
    cooldown_minutes: float = Field(default_factory=lambda: settings.DEFAULT_COOLDOWN_MINUTES, ge=0)
    max_investment: float = Field(default_factory=lambda: settings.DEFAULT_MAX_INVESTMENT, gt=0)
    activated_at: Optional[datetime] = None

    @field_validator("intervals", mode="before")
    @classmethod
    def parse_intervals(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            v = [p for p in v.split(",")]
        out: List[str] = []
        for x in v or []:
            s = str(x).strip()
            if s and s not in out:
                out.append(s)
        return out

    @field_validator("intervals")
    @classmethod
    def check_intervals(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one interval is required")
        bad = [i for i in v if i not in KLINE_INTERVALS]
        if bad:
            raise ValueError(f"unknown intervals: {bad}")
        return v

    @field_validator("symbols", mode="before")
    @classmethod
    def parse_symbols(cls, v: Any) -> Any:
        # accept bare strings alongside {symbol, lower_limit, upper_limit}
        if v is None:
            return v
        return [{"symbol": x} if isinstance(x, str) else x for x in v]

    @field_validator("symbols")
    @classmethod
    def dedupe_symbols(cls, v: List[SymbolConfig]) -> List[SymbolConfig]:
        if not v:
            return _default_symbols()
        seen = set()
        out = []
        for sc in v:
            if sc.symbol in seen:
                continue
            seen.add(sc.symbol)
            out.append(sc)
        return out

    def symbol_config(self, symbol: str) -> Optional[SymbolConfig]:
        symbol = symbol.upper()
        for sc in self.symbols:
            if sc.symbol == symbol:
                return sc
        return None

    def stamped(self) -> "BotConfig":
        return self.model_copy(update={"activated_at": datetime.now(timezone.utc)})


@dataclass
class UserTickResult:
    user_id: str
    outcomes: List[TradeOutcome] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_reason: Optional[str] = None
    notified: Optional[bool] = None

    @property
    def executed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.executed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "executed": self.executed_count,
            "skipped_reason": self.skipped_reason,
            "notified": self.notified,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "errors": self.errors,
        }


@dataclass
class TickReport:
    cycle_id: str
    started_at: str
    finished_at: Optional[str] = None
    skipped: bool = False
    pairs_requested: int = 0
    pairs_fetched: int = 0
    fetch_failures: Dict[str, str] = field(default_factory=dict)
    users: List[UserTickResult] = field(default_factory=list)

    @property
    def executed_count(self) -> int:
        return sum(u.executed_count for u in self.users)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "skipped": self.skipped,
            "pairs_requested": self.pairs_requested,
            "pairs_fetched": self.pairs_fetched,
            "fetch_failures": self.fetch_failures,
            "executed": self.executed_count,
            "users": [u.to_dict() for u in self.users],
        }
