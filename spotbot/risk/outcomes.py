from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from spotbot.exchange.models import ExchangeOrder

EXECUTED = "executed"
REJECTED = "rejected"
FAILED = "failed"


class Reason(str, Enum):
    COOLDOWN = "cooldown"
    PRICE_BELOW_LOWER_LIMIT = "price_below_lower_limit"
    PRICE_ABOVE_UPPER_LIMIT = "price_above_upper_limit"
    MAX_INVESTMENT = "max_investment_reached"
    DUPLICATE_POSITION = "duplicate_position_in_band"
    INSUFFICIENT_QUOTE_BALANCE = "insufficient_quote_balance"
    NO_BASE_BALANCE = "no_base_balance"
    NO_ELIGIBLE_POSITIONS = "no_eligible_positions"
    INSUFFICIENT_BATCH_BALANCE = "insufficient_balance_for_batch"
    BELOW_MIN_QTY = "below_min_qty"
    BELOW_MIN_NOTIONAL = "below_min_notional"
    BELOW_PROFIT_FLOOR = "below_profit_floor"
    EXCHANGE_ERROR = "exchange_error"
    NETWORK_ERROR = "network_error"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass
class TradeOutcome:
    """Result of one decision for (user, symbol): one per buy, one per sell leg."""

    symbol: str
    side: str  # BUY / SELL
    status: str  # executed / rejected / failed
    confidence: float = 0.0
    reason: Optional[Reason] = None
    message: str = ""
    order: Optional[ExchangeOrder] = None
    position_id: Optional[int] = None
    sale_id: Optional[int] = None
    db_saved: Optional[bool] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def executed(self) -> bool:
        return self.status == EXECUTED

    @classmethod
    def rejected(cls, symbol: str, side: str, reason: Reason, message: str, confidence: float = 0.0, **details) -> "TradeOutcome":
        return cls(symbol, side, REJECTED, confidence, reason, message, details=details)

    @classmethod
    def failed(cls, symbol: str, side: str, reason: Reason, message: str, confidence: float = 0.0, **details) -> "TradeOutcome":
        return cls(symbol, side, FAILED, confidence, reason, message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "status": self.status,
            "confidence": self.confidence,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "order_id": self.order.order_id if self.order else None,
            "position_id": self.position_id,
            "sale_id": self.sale_id,
            "db_saved": self.db_saved,
            "details": self.details,
        }
