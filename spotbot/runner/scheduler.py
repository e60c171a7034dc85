from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from spotbot.core.config import settings
from spotbot.core.errors import CredentialError
from spotbot.exchange.models import ExchangeCredentials, Kline, MarketDataClient
from spotbot.notify.hub import NotificationSink
from spotbot.ops.context import clear_cycle_id, set_cycle_id
from spotbot.persistence.audit import Audit
from spotbot.persistence.db import utc_now_iso
from spotbot.risk.manager import RiskManager
from spotbot.risk.outcomes import TradeOutcome
from spotbot.runner.models import BotConfig, TickReport, UserTickResult
from spotbot.runner.registry import BotRegistry
from spotbot.strategy.aggregator import AggregatedSignal, aggregate_signals
from spotbot.strategy.base import IndicatorSnapshot, Signal, SignalEvaluator
from spotbot.strategy.indicators import compute_snapshot

log = logging.getLogger("spotbot.scheduler")

Pair = Tuple[str, str]  # (symbol, interval)


class CredentialSource(Protocol):
    """What the scheduler needs from the credential store."""

    def credentials_for(self, user_id: str) -> ExchangeCredentials: ...


def required_pairs(bots: Dict[str, BotConfig]) -> Dict[Pair, int]:
    """
    Deduplicated (symbol, interval) pairs over all active configs.
    A pair shared by several users is fetched once with the largest limit.
    """
    pairs: Dict[Pair, int] = {}
    for cfg in bots.values():
        for sc in cfg.symbols:
            for interval in cfg.intervals:
                key = (sc.symbol, interval)
                pairs[key] = max(pairs.get(key, 0), int(cfg.candle_limit))
    return pairs


def fetch_pairs(
    client: MarketDataClient,
    pairs: Dict[Pair, int],
    max_workers: int,
) -> Tuple[Dict[Pair, List[Kline]], Dict[Pair, str]]:
    """
    Fetch candles for every pair, at most `max_workers` requests in flight.
    Returns (candles, failures); one failing pair never affects the others.
    """
    candles: Dict[Pair, List[Kline]] = {}
    failures: Dict[Pair, str] = {}
    if not pairs:
        return candles, failures

    def _one(item):
        (symbol, interval), limit = item
        return client.klines(symbol, interval, limit)

    items = list(pairs.items())
    with ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="kline") as pool:
        futures = {pool.submit(_one, it): it[0] for it in items}
        for fut, pair in futures.items():
            try:
                candles[pair] = fut.result()
            except Exception as e:
                failures[pair] = f"{type(e).__name__}: {e}"
    return candles, failures


def evaluate_pairs(
    candles: Dict[Pair, List[Kline]],
    evaluator: SignalEvaluator,
) -> Tuple[Dict[Pair, IndicatorSnapshot], Dict[Pair, Signal]]:
    """One snapshot and one signal per pair, shared by every user referencing it."""
    snapshots: Dict[Pair, IndicatorSnapshot] = {}
    signals: Dict[Pair, Signal] = {}
    for pair, rows in candles.items():
        snap = compute_snapshot([k.close for k in rows])
        snapshots[pair] = snap
        signals[pair] = evaluator.evaluate(snap)
    return snapshots, signals


def notification_payload(user_id: str, outcomes: List[TradeOutcome]) -> Dict[str, object]:
    executed = [o for o in outcomes if o.executed]
    return {
        "type": "bot_trades",
        "user_id": user_id,
        "executed": len(executed),
        "buys": sum(1 for o in executed if o.side == "BUY"),
        "sells": sum(1 for o in executed if o.side == "SELL"),
        "symbols": sorted({o.symbol for o in executed}),
        "timestamp": utc_now_iso(),
    }


class Scheduler:
    """
    Drives the bot pipeline for every active user on a fixed interval.

    Per tick: snapshot the registry, resolve credentials, fetch each needed
    (symbol, interval) once under bounded concurrency, evaluate once per
    pair, then run aggregate -> risk -> execute per (user, symbol). A
    failure is contained to its pair or its (user, symbol) unit.
    """

    def __init__(
        self,
        registry: BotRegistry,
        credentials: CredentialSource,
        market: MarketDataClient,
        client_factory: Callable[[ExchangeCredentials], MarketDataClient],
        evaluator: SignalEvaluator,
        risk: RiskManager,
        audit: Audit,
        notifier: Optional[NotificationSink] = None,
        *,
        interval_seconds: Optional[float] = None,
        fetch_concurrency: Optional[int] = None,
        min_confidence: Optional[float] = None,
    ):
        self.registry = registry
        self.credentials = credentials
        self.market = market
        self.client_factory = client_factory
        self.evaluator = evaluator
        self.risk = risk
        self.audit = audit
        self.notifier = notifier

        self.interval_seconds = float(
            settings.SCHEDULER_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self.fetch_concurrency = int(
            settings.FETCH_CONCURRENCY if fetch_concurrency is None else fetch_concurrency
        )
        self.min_confidence = float(
            settings.MIN_ACTION_CONFIDENCE if min_confidence is None else min_confidence
        )

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.tick_count = 0
        self.last_tick_at: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_report: Optional[TickReport] = None

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    @contextmanager
    def cycle_guard(self) -> Iterator[bool]:
        """Non-blocking: yields False while another tick holds the lock."""
        acquired = self._cycle_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._cycle_lock.release()

    def run_once(self) -> TickReport:
        with self.cycle_guard() as acquired:
            if not acquired:
                self.audit.event(
                    event_type="TICK_SKIPPED",
                    action="TICK_ALREADY_RUNNING",
                    details={"note": "previous tick still running"},
                )
                return TickReport(cycle_id="", started_at=utc_now_iso(), skipped=True)

            cycle_id = str(uuid.uuid4())
            set_cycle_id(cycle_id)
            report = TickReport(cycle_id=cycle_id, started_at=utc_now_iso())
            try:
                self._tick(report)
            except Exception as e:
                # tick boundary: nothing escapes into the loop
                log.exception("tick %s crashed", cycle_id)
                self.last_error = f"{type(e).__name__}: {e}"
            finally:
                report.finished_at = utc_now_iso()
                self.audit.event(
                    event_type="TICK_END",
                    details={
                        "executed": report.executed_count,
                        "users": len(report.users),
                        "pairs_fetched": report.pairs_fetched,
                        "fetch_failures": len(report.fetch_failures),
                    },
                )
                clear_cycle_id()
                with self._state_lock:
                    self.tick_count += 1
                    self.last_tick_at = report.finished_at
                    self.last_report = report
            return report

    def _tick(self, report: TickReport) -> None:
        bots = self.registry.snapshot()
        self.audit.event(event_type="TICK_START", details={"active_bots": len(bots)})
        if not bots:
            return

        # credentials first: a user without a usable link takes no part in this tick
        clients: Dict[str, MarketDataClient] = {}
        for user_id in bots:
            res = UserTickResult(user_id=user_id)
            report.users.append(res)
            try:
                clients[user_id] = self.client_factory(self.credentials.credentials_for(user_id))
            except CredentialError as e:
                log.warning("user %s excluded from tick: %s", user_id, e)
                res.skipped_reason = "credential_error"
                res.errors.append({"stage": "credentials", "error": str(e)})
                self.audit.event(
                    event_type="CREDENTIAL_ERROR", user_id=user_id, details={"error": str(e)}
                )
            except Exception as e:
                log.exception("client setup failed for %s", user_id)
                err = f"{type(e).__name__}: {e}"
                res.skipped_reason = "client_error"
                res.errors.append({"stage": "client", "error": err})
                self.audit.event(event_type="CLIENT_ERROR", user_id=user_id, details={"error": err})

        active = {u: bots[u] for u in clients}
        pairs = required_pairs(active)
        report.pairs_requested = len(pairs)

        candles, failures = fetch_pairs(self.market, pairs, self.fetch_concurrency)
        report.pairs_fetched = len(candles)
        for (symbol, interval), err in failures.items():
            log.warning("kline fetch failed for %s %s: %s", symbol, interval, err)
            report.fetch_failures[f"{symbol}:{interval}"] = err
            self.audit.event(
                event_type="FETCH_FAILED",
                symbol=symbol,
                details={"interval": interval, "error": err},
            )

        _, signals = evaluate_pairs(candles, self.evaluator)

        for res in report.users:
            if res.user_id not in clients:
                continue
            self._run_user(res, clients[res.user_id], active[res.user_id], signals)

    def _run_user(
        self,
        res: UserTickResult,
        client: MarketDataClient,
        config: BotConfig,
        signals: Dict[Pair, Signal],
    ) -> None:
        user_id = res.user_id
        for sc in config.symbols:
            try:
                per_interval = {
                    i: signals[(sc.symbol, i)] for i in config.intervals if (sc.symbol, i) in signals
                }
                agg = aggregate_signals(sc.symbol, config.intervals, per_interval, self.min_confidence)
                outcomes = self._decide(client, user_id, agg, config, sc)
                res.outcomes.extend(outcomes)
            except Exception as e:
                # unit boundary: one (user, symbol) never takes down the others
                log.exception("unit %s/%s failed", user_id, sc.symbol)
                err = f"{type(e).__name__}: {e}"
                res.errors.append({"stage": "unit", "symbol": sc.symbol, "error": err})
                self.audit.event(
                    event_type="UNIT_FAILED", user_id=user_id, symbol=sc.symbol, details={"error": err}
                )

        if res.executed_count > 0:
            res.notified = self._notify(user_id, res.outcomes)

    def _decide(self, client, user_id, agg: AggregatedSignal, config: BotConfig, sc) -> List[TradeOutcome]:
        if not agg.is_trade:
            return []

        self.audit.event(
            event_type="DECISION",
            user_id=user_id,
            symbol=agg.symbol,
            action=agg.action.value,
            details={
                "confidence": agg.confidence,
                "buy_score": agg.buy_score,
                "sell_score": agg.sell_score,
                "per_interval": {
                    i: {"action": s.action.value, "confidence": s.confidence}
                    for i, s in agg.per_interval.items()
                },
            },
        )

        outcomes = self.risk.process_signal(client, user_id, agg, config, sc)
        for o in outcomes:
            self.audit.event(
                event_type="EXECUTION_RESULT",
                user_id=user_id,
                symbol=o.symbol,
                action=o.side,
                details=o.to_dict(),
            )
        return outcomes

    def _notify(self, user_id: str, outcomes: List[TradeOutcome]) -> bool:
        if self.notifier is None:
            return False
        payload = notification_payload(user_id, outcomes)
        try:
            delivered = bool(self.notifier.send(user_id, payload))
        except Exception as e:
            # best-effort: a broken sink never fails the tick
            log.warning("notification to %s failed: %s", user_id, e)
            return False
        if not delivered:
            log.debug("user %s not connected, notification dropped", user_id)
        return delivered

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def start(self) -> bool:
        """Start the background loop. False if it is already running."""
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="spotbot-scheduler", daemon=True)
            self._thread.start()
        log.info("scheduler loop started (every %ss)", self.interval_seconds)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout)
        log.info("scheduler loop stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.run_once()
            except Exception as e:
                log.exception("scheduler loop iteration failed")
                self.last_error = f"{type(e).__name__}: {e}"
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, self.interval_seconds - elapsed))

    def status(self) -> Dict[str, object]:
        with self._state_lock:
            return {
                "running": self.running,
                "interval_seconds": self.interval_seconds,
                "tick_count": self.tick_count,
                "last_tick_at": self.last_tick_at,
                "last_error": self.last_error,
                "active_bots": len(self.registry),
            }
