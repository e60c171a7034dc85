from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Sequence

from spotbot.core.config import settings
from spotbot.credentials.store import CredentialStore
from spotbot.exchange.binance.client import BinanceSpotClient
from spotbot.exchange.models import ExchangeCredentials, MarketDataClient
from spotbot.execution.executor import TradeExecutor
from spotbot.notify.hub import NotificationHub
from spotbot.persistence.audit import Audit
from spotbot.persistence.db import DB
from spotbot.persistence.positions import PositionStore
from spotbot.risk.cooldown import CooldownTracker
from spotbot.risk.manager import RiskManager
from spotbot.runner.models import BotConfig
from spotbot.runner.registry import BotRegistry
from spotbot.runner.scheduler import Scheduler, evaluate_pairs, fetch_pairs
from spotbot.strategy.aggregator import aggregate_signals
from spotbot.strategy.evaluator import WeightedRuleEvaluator

log = logging.getLogger("spotbot.service")


def _binance_factory(creds: ExchangeCredentials) -> MarketDataClient:
    return BinanceSpotClient(credentials=creds)


class BotService:
    """
    Wires the engine together and exposes what the request layer calls:
    activate / deactivate / state, plus read-only inspection helpers.
    """

    def __init__(
        self,
        db: Optional[DB] = None,
        *,
        market: Optional[MarketDataClient] = None,
        client_factory: Optional[Callable[[ExchangeCredentials], MarketDataClient]] = None,
        encryption_key: Optional[str] = None,
        hub: Optional[NotificationHub] = None,
        cooldowns: Optional[CooldownTracker] = None,
        audit_path: Optional[str] = None,
        autostart: bool = True,
    ):
        self.db = db or DB(settings.DB_PATH)
        self.positions = PositionStore(self.db)
        self.audit = Audit(self.db, audit_path or settings.AUDIT_JSONL_PATH)
        self.credentials = CredentialStore(
            self.db, settings.ENCRYPTION_KEY if encryption_key is None else encryption_key
        )
        self.hub = hub or NotificationHub()
        self.cooldowns = cooldowns or CooldownTracker()
        self.registry = BotRegistry()
        self.market = market or BinanceSpotClient()
        self.evaluator = WeightedRuleEvaluator(min_confidence=settings.MIN_ACTION_CONFIDENCE)

        self.executor = TradeExecutor(self.positions, self.audit)
        self.risk = RiskManager(self.positions, self.cooldowns, self.executor)
        self.scheduler = Scheduler(
            registry=self.registry,
            credentials=self.credentials,
            market=self.market,
            client_factory=client_factory or _binance_factory,
            evaluator=self.evaluator,
            risk=self.risk,
            audit=self.audit,
            notifier=self.hub,
        )
        self.autostart = autostart

    # ---------------- bot lifecycle ----------------

    def activate_bot(self, user_id: str, config: BotConfig) -> bool:
        activated = self.registry.activate(user_id, config)
        if not activated:
            return False

        self.audit.event(
            event_type="BOT_ACTIVATED",
            user_id=user_id,
            details={
                "symbols": [s.symbol for s in config.symbols],
                "intervals": config.intervals,
                "trade_amount": config.trade_amount,
                "max_investment": config.max_investment,
            },
        )
        log.info("bot activated for %s (%d symbols)", user_id, len(config.symbols))

        # self-driving: the first activation starts the loop
        if self.autostart and not self.scheduler.running:
            self.scheduler.start()
        return True

    def deactivate_bot(self, user_id: str) -> bool:
        deactivated = self.registry.deactivate(user_id)
        if deactivated:
            self.audit.event(event_type="BOT_DEACTIVATED", user_id=user_id)
            log.info("bot deactivated for %s", user_id)
        return deactivated

    def get_bot_state(self, user_id: str) -> Optional[BotConfig]:
        return self.registry.get(user_id)

    # ---------------- inspection ----------------

    def signals_for(
        self, symbol: str, intervals: Sequence[str], limit: int
    ) -> Dict[str, Any]:
        """Per-interval indicators and signals plus the fused decision. Never trades."""
        symbol = symbol.upper()
        # a repeated interval would count twice in the aggregate
        intervals = list(dict.fromkeys(intervals))
        pairs = {(symbol, i): int(limit) for i in intervals}
        candles, failures = fetch_pairs(self.market, pairs, settings.FETCH_CONCURRENCY)
        snapshots, signals = evaluate_pairs(candles, self.evaluator)

        per_interval: Dict[str, Any] = {}
        for i in intervals:
            pair = (symbol, i)
            if pair in failures:
                per_interval[i] = {"error": failures[pair]}
                continue
            sig = signals[pair]
            per_interval[i] = {
                "indicators": snapshots[pair].latest(),
                "action": sig.action.value,
                "confidence": sig.confidence,
            }

        agg = aggregate_signals(
            symbol,
            intervals,
            {i: signals[(symbol, i)] for i in intervals if (symbol, i) in signals},
            settings.MIN_ACTION_CONFIDENCE,
        )
        return {
            "symbol": symbol,
            "intervals": per_interval,
            "aggregate": {
                "action": agg.action.value,
                "confidence": agg.confidence,
                "buy_score": agg.buy_score,
                "sell_score": agg.sell_score,
            },
        }

    def positions_for(self, user_id: str, open_only: bool = False) -> List[Dict[str, Any]]:
        return [asdict(p) for p in self.positions.list_positions(user_id, open_only)]

    def sales_for(self, user_id: str) -> List[Dict[str, Any]]:
        return [asdict(s) for s in self.positions.list_sales(user_id)]

    def position_sales(self, user_id: str, position_id: int) -> Optional[List[Dict[str, Any]]]:
        """Sales closing one position; None when the position is not this user's."""
        pos = self.positions.get_position(position_id)
        if pos is None or pos.user_id != user_id:
            return None
        return [asdict(s) for s in self.positions.sales_for_position(position_id)]

    def status(self) -> Dict[str, Any]:
        st = self.scheduler.status()
        st["cooldowns"] = self.cooldowns.snapshot()
        return st

    def shutdown(self) -> None:
        self.scheduler.stop()
