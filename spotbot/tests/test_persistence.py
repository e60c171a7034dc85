import json

import pytest

from spotbot.ops.context import clear_cycle_id, set_cycle_id
from spotbot.persistence.positions import Position, Sale


def _pos(entry, **kw):
    base = dict(id=None, user_id="u1", symbol="btcusdc", entry_price=entry, quantity=0.1, quote_value=entry * 0.1)
    base.update(kw)
    return Position(**base)


def test_positions_roundtrip_and_symbol_normalised(store):
    pid = store.insert_position(_pos(100.0, commission=0.01, commission_asset="USDC", order_id="7"))
    p = store.get_position(pid)
    assert p.symbol == "BTCUSDC"
    assert p.order_id == "7"
    assert p.closed is False
    assert p.opened_at


def test_open_bot_quote_total(store):
    store.insert_position(_pos(100.0))
    store.insert_position(_pos(200.0))
    store.insert_position(_pos(300.0, bot_placed=False))
    closed = store.insert_position(_pos(400.0))
    store.mark_closed(closed)
    store.insert_position(_pos(500.0, user_id="u2"))
    assert store.open_bot_quote_total("u1") == pytest.approx(30.0)


def test_price_range_is_inclusive(store):
    store.insert_position(_pos(100.0))
    assert store.has_open_in_price_range("u1", "BTCUSDC", 100.0, 100.0)
    assert not store.has_open_in_price_range("u1", "BTCUSDC", 100.01, 101.0)
    assert not store.has_open_in_price_range("u1", "ETHUSDC", 0.0, 1e9)


def test_positions_below_is_strict(store):
    store.insert_position(_pos(100.0))
    assert store.open_bot_positions_below("u1", "BTCUSDC", 100.0) == []
    assert len(store.open_bot_positions_below("u1", "BTCUSDC", 100.01)) == 1


def test_sales_listing(store):
    pid = store.insert_position(_pos(100.0))
    sid = store.insert_sale(
        Sale(
            id=None, position_id=pid, user_id="u1", symbol="BTCUSDC", exit_price=101.0,
            quantity=0.1, commission=0.0101, commission_asset="USDC",
            profit=0.1, profit_pct=1.0, closed_at="",
        )
    )
    [s] = store.sales_for_position(pid)
    assert s.id == sid
    assert s.closed_at
    assert store.list_sales("u2") == []


def test_audit_writes_db_and_jsonl(audit, tmp_path):
    set_cycle_id("cycle-1")
    try:
        audit.event("DECISION", user_id="u1", symbol="BTCUSDC", action="BUY", details={"confidence": 0.7})
    finally:
        clear_cycle_id()

    [row] = audit.tail(1)
    assert row["event_type"] == "DECISION"
    assert row["cycle_id"] == "cycle-1"
    assert row["details"] == {"confidence": 0.7}

    lines = (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["action"] == "BUY"
