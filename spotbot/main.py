import logging
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Query
from pydantic import ValidationError

from spotbot.core.config import KLINE_INTERVALS, settings
from spotbot.core.errors import SpotBotError
from spotbot.runner.models import BotConfig
from spotbot.runner.service import BotService

log = logging.getLogger("spotbot.api")

app = FastAPI(title="SpotBot")
bot_service: Optional[BotService] = None


def get_service() -> BotService:
    global bot_service
    if bot_service is None:
        bot_service = BotService()
    return bot_service


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
    except ValueError as e:
        log.critical("invalid configuration: %s", e)
        raise
    for w in warnings:
        log.warning("[CONFIG WARNING] %s", w)


@app.on_event("shutdown")
async def _shutdown_scheduler():
    if bot_service is not None:
        bot_service.shutdown()


@app.get("/")
def root():
    return {
        "status": "ok",
        "exchange": f"binance-spot-{settings.BINANCE_ENV}",
        "encryption_key_loaded": bool(settings.ENCRYPTION_KEY),
    }


# ---------------- bot lifecycle ----------------


@app.post("/bot/{user_id}/activate")
def activate_bot(user_id: str, payload: Optional[dict] = Body(default=None)):
    try:
        config = BotConfig.model_validate(payload or {})
    except ValidationError as e:
        raise HTTPException(
            status_code=422, detail=e.errors(include_url=False, include_context=False)
        )

    activated = get_service().activate_bot(user_id, config)
    if not activated:
        raise HTTPException(status_code=409, detail="bot already active")
    return {"activated": True, "config": get_service().get_bot_state(user_id).model_dump(mode="json")}


@app.post("/bot/{user_id}/deactivate")
def deactivate_bot(user_id: str):
    return {"deactivated": get_service().deactivate_bot(user_id)}


@app.get("/bot/{user_id}")
def bot_state(user_id: str):
    config = get_service().get_bot_state(user_id)
    if config is None:
        return {"active": False, "config": None}
    return {"active": True, "config": config.model_dump(mode="json")}


@app.get("/bot/{user_id}/positions")
def bot_positions(user_id: str, open_only: bool = False):
    return {"positions": get_service().positions_for(user_id, open_only=open_only)}


@app.get("/bot/{user_id}/sales")
def bot_sales(user_id: str):
    return {"sales": get_service().sales_for(user_id)}


@app.get("/bot/{user_id}/positions/{position_id}/sales")
def position_sales(user_id: str, position_id: int):
    sales = get_service().position_sales(user_id, position_id)
    if sales is None:
        raise HTTPException(status_code=404, detail="position not found")
    return {"sales": sales}


# ---------------- signals ----------------


@app.get("/signals/{symbol}")
def signals(
    symbol: str,
    intervals: str = Query(default=",".join(settings.DEFAULT_INTERVALS)),
    limit: int = Query(default=settings.DEFAULT_CANDLE_LIMIT, ge=30, le=1000),
):
    wanted = [i.strip() for i in intervals.split(",") if i.strip()]
    bad = [i for i in wanted if i not in KLINE_INTERVALS]
    if not wanted or bad:
        raise HTTPException(status_code=400, detail=f"invalid intervals: {bad or intervals}")
    try:
        return get_service().signals_for(symbol, wanted, limit)
    except SpotBotError as e:
        raise HTTPException(status_code=502, detail=str(e))


# ---------------- runner ----------------


@app.post("/runner/once")
def runner_once():
    report = get_service().scheduler.run_once()
    return report.to_dict()


@app.get("/runner/status")
def runner_status():
    return get_service().status()


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = 50):
    limit = max(1, min(int(limit), 500))
    events = get_service().audit.tail(limit)[::-1]
    return {"count": len(events), "events": events}


# ---------------- notifications ----------------


@app.post("/notifications/{user_id}/subscribe")
def notifications_subscribe(user_id: str):
    get_service().hub.subscribe(user_id)
    return {"subscribed": True}


@app.post("/notifications/{user_id}/unsubscribe")
def notifications_unsubscribe(user_id: str):
    get_service().hub.unsubscribe(user_id)
    return {"subscribed": False}


@app.get("/notifications/{user_id}")
def notifications(user_id: str):
    hub = get_service().hub
    return {"connected": hub.is_connected(user_id), "notifications": hub.drain(user_id)}
