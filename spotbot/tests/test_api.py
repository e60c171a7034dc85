import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

import spotbot.main as main
from spotbot.persistence.positions import Position
from spotbot.runner.service import BotService
from spotbot.tests.fakes import FakeSpotClient, make_klines


@pytest.fixture
def market():
    rising = make_klines([100 + i * 0.5 for i in range(60)])
    return FakeSpotClient(klines={("BTCUSDC", "3m"): rising, ("BTCUSDC", "5m"): rising})


@pytest.fixture
def service(db, tmp_path, market, monkeypatch):
    svc = BotService(
        db,
        market=market,
        client_factory=lambda creds: market,
        encryption_key=Fernet.generate_key().decode(),
        audit_path=str(tmp_path / "audit.jsonl"),
        autostart=False,
    )
    monkeypatch.setattr(main, "bot_service", svc)
    return svc


@pytest.fixture
def api(service):
    return TestClient(main.app)


def test_activate_state_deactivate(api):
    r = api.post("/bot/u1/activate", json={"symbols": ["btcusdc"], "intervals": ["3m"], "trade_amount": 12})
    assert r.status_code == 200
    assert r.json()["config"]["symbols"][0]["symbol"] == "BTCUSDC"

    again = api.post("/bot/u1/activate", json={})
    assert again.status_code == 409

    state = api.get("/bot/u1").json()
    assert state["active"] is True
    assert state["config"]["trade_amount"] == 12
    assert state["config"]["activated_at"]

    assert api.post("/bot/u1/deactivate").json() == {"deactivated": True}
    assert api.post("/bot/u1/deactivate").json() == {"deactivated": False}
    assert api.get("/bot/u1").json() == {"active": False, "config": None}


def test_activate_rejects_invalid_config(api):
    r = api.post("/bot/u1/activate", json={"intervals": ["7m"]})
    assert r.status_code == 422
    assert api.get("/bot/u1").json()["active"] is False


def test_signals_endpoint_does_not_trade(api, market):
    r = api.get("/signals/btcusdc", params={"intervals": "3m,5m", "limit": 60})
    assert r.status_code == 200
    body = r.json()
    assert body["symbol"] == "BTCUSDC"
    assert set(body["intervals"]) == {"3m", "5m"}
    assert body["intervals"]["3m"]["indicators"]["close"] == pytest.approx(129.5)
    assert body["aggregate"]["action"] in {"BUY", "SELL", "NONE"}
    assert market.buy_calls == [] and market.sell_calls == []


def test_signals_rejects_unknown_interval(api):
    assert api.get("/signals/BTCUSDC", params={"intervals": "7m"}).status_code == 400


def test_manual_tick_and_status(api, service):
    service.credentials.save_link("u1", "k", "s")
    api.post("/bot/u1/activate", json={"symbols": ["BTCUSDC"], "intervals": ["3m"]})

    report = api.post("/runner/once").json()
    assert report["skipped"] is False
    assert report["pairs_fetched"] == 1
    assert [u["user_id"] for u in report["users"]] == ["u1"]

    status = api.get("/runner/status").json()
    assert status["tick_count"] == 1
    assert status["active_bots"] == 1
    assert status["running"] is False


def test_tick_without_credentials_skips_user(api):
    api.post("/bot/u1/activate", json={"symbols": ["BTCUSDC"], "intervals": ["3m"]})
    report = api.post("/runner/once").json()
    assert report["users"][0]["skipped_reason"] == "credential_error"


def test_positions_and_sales_listing(api, service):
    from spotbot.persistence.positions import Position

    service.positions.insert_position(
        Position(id=None, user_id="u1", symbol="BTCUSDC", entry_price=100.0, quantity=0.1, quote_value=10.0)
    )
    positions = api.get("/bot/u1/positions", params={"open_only": True}).json()["positions"]
    assert len(positions) == 1
    assert positions[0]["entry_price"] == 100.0
    assert api.get("/bot/u1/sales").json() == {"sales": []}


def test_notifications_drain(api, service):
    api.post("/notifications/u1/subscribe")
    service.hub.send("u1", {"type": "bot_trades", "executed": 1})
    body = api.get("/notifications/u1").json()
    assert body["connected"] is True
    assert body["notifications"] == [{"type": "bot_trades", "executed": 1}]
    assert api.get("/notifications/u1").json()["notifications"] == []


def test_signals_repeated_interval_counts_once(api, market):
    once = api.get("/signals/BTCUSDC", params={"intervals": "3m", "limit": 60}).json()
    market.kline_calls.clear()
    twice = api.get("/signals/BTCUSDC", params={"intervals": "3m,3m", "limit": 60}).json()

    assert market.kline_calls == [("BTCUSDC", "3m", 60)]
    assert list(twice["intervals"]) == ["3m"]
    assert twice["aggregate"] == once["aggregate"]


def test_events_tail_is_oldest_first(api):
    api.post("/bot/u1/activate", json={"symbols": ["BTCUSDC"], "intervals": ["3m"]})
    api.post("/bot/u1/deactivate")

    body = api.get("/logs/events/tail", params={"limit": 2}).json()
    assert body["count"] == 2
    assert [e["event_type"] for e in body["events"]] == ["BOT_ACTIVATED", "BOT_DEACTIVATED"]
    assert body["events"][0]["user_id"] == "u1"


def test_position_sales_scoped_to_owner(api, service):
    pid = service.positions.insert_position(
        Position(id=None, user_id="u1", symbol="BTCUSDC", entry_price=100.0, quantity=0.1, quote_value=10.0)
    )
    assert api.get(f"/bot/u1/positions/{pid}/sales").json() == {"sales": []}
    assert api.get(f"/bot/u2/positions/{pid}/sales").status_code == 404
    assert api.get("/bot/u1/positions/9999/sales").status_code == 404


def test_unsubscribe_stops_delivery(api, service):
    api.post("/notifications/u1/subscribe")
    assert api.post("/notifications/u1/unsubscribe").json() == {"subscribed": False}
    assert service.hub.send("u1", {"type": "bot_trades"}) is False
    assert api.get("/notifications/u1").json() == {"connected": False, "notifications": []}
