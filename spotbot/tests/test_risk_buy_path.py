import pytest

from spotbot.core.errors import PersistenceError, TransientNetworkError
from spotbot.execution.executor import TradeExecutor
from spotbot.persistence.positions import Position, PositionStore
from spotbot.risk.cooldown import CooldownTracker
from spotbot.risk.manager import RiskManager
from spotbot.risk.outcomes import EXECUTED, FAILED, REJECTED, Reason
from spotbot.runner.models import BotConfig, SymbolConfig
from spotbot.strategy.aggregator import AggregatedSignal
from spotbot.strategy.base import Action
from spotbot.tests.fakes import FakeClock, FakeSpotClient

USER = "u1"
SYMBOL = "BTCUSDC"


def _buy_signal(conf=0.8):
    return AggregatedSignal(SYMBOL, Action.BUY, conf, conf, 0.0)


def _config(**kw):
    base = dict(trade_amount=10.0, max_investment=100.0, cooldown_minutes=3, symbols=[SYMBOL], intervals=["3m", "5m"])
    base.update(kw)
    return BotConfig(**base)


def _open(store, entry, quote, bot_placed=True, qty=0.1):
    return store.insert_position(
        Position(
            id=None, user_id=USER, symbol=SYMBOL, entry_price=entry,
            quantity=qty, quote_value=quote, bot_placed=bot_placed,
        )
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(store, audit, clock):
    return RiskManager(store, CooldownTracker(clock=clock), TradeExecutor(store, audit))


def test_buy_executes_and_persists_position(manager, store):
    client = FakeSpotClient(price=100.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config())

    assert out.status == EXECUTED
    assert out.db_saved is True
    assert client.buy_calls == [(SYMBOL, 10.0)]

    [pos] = store.list_positions(USER, open_only=True)
    assert pos.id == out.position_id
    assert pos.entry_price == pytest.approx(100.0)
    assert pos.quantity == pytest.approx(0.1)
    assert pos.quote_value == pytest.approx(10.0)
    assert pos.commission_asset == "USDC"
    assert pos.bot_placed is True


def test_cooldown_allows_exactly_one_buy(manager, clock):
    client = FakeSpotClient(price=100.0)
    first = manager.process_signal(client, USER, _buy_signal(), _config())
    client.price = 110.0  # out of the duplicate band
    second = manager.process_signal(client, USER, _buy_signal(), _config())

    assert first[0].status == EXECUTED
    assert second[0].status == REJECTED
    assert second[0].reason == Reason.COOLDOWN
    assert second[0].details["minutes_left"] == pytest.approx(3.0)
    assert len(client.buy_calls) == 1

    clock.advance(3 * 60 + 1)
    third = manager.process_signal(client, USER, _buy_signal(), _config())
    assert third[0].status == EXECUTED


def test_cooldown_is_shared_across_users(manager):
    client = FakeSpotClient(price=100.0)
    manager.process_signal(client, USER, _buy_signal(), _config())
    [out] = manager.process_signal(client, "u2", _buy_signal(), _config())
    assert out.reason == Reason.COOLDOWN


@pytest.mark.parametrize(
    "lower,upper,reason",
    [
        (101.0, None, Reason.PRICE_BELOW_LOWER_LIMIT),
        (None, 99.0, Reason.PRICE_ABOVE_UPPER_LIMIT),
    ],
)
def test_price_band_rejects(manager, lower, upper, reason):
    client = FakeSpotClient(price=100.0)
    sc = SymbolConfig(symbol=SYMBOL, lower_limit=lower, upper_limit=upper)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config(), sc)
    assert out.status == REJECTED
    assert out.reason == reason
    assert client.buy_calls == []


def test_price_inside_band_passes(manager):
    client = FakeSpotClient(price=100.0)
    sc = SymbolConfig(symbol=SYMBOL, lower_limit=90.0, upper_limit=110.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config(), sc)
    assert out.status == EXECUTED


def test_amount_raised_to_min_notional(manager):
    client = FakeSpotClient(price=100.0, min_notional=5.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config(trade_amount=2.0))
    assert out.status == EXECUTED
    assert client.buy_calls == [(SYMBOL, 5.0)]


def test_missing_min_notional_falls_back_to_default(manager):
    client = FakeSpotClient(price=100.0, min_notional=0.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config(trade_amount=2.0))
    assert out.status == EXECUTED
    assert client.buy_calls == [(SYMBOL, 5.0)]


def test_max_investment_equality_is_approved(manager, store):
    _open(store, entry=50.0, quote=60.0)
    _open(store, entry=60.0, quote=30.0)
    client = FakeSpotClient(price=100.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config(max_investment=100.0))
    assert out.status == EXECUTED


def test_max_investment_excess_is_rejected(manager, store):
    _open(store, entry=50.0, quote=91.0)
    client = FakeSpotClient(price=100.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config(max_investment=100.0))
    assert out.status == REJECTED
    assert out.reason == Reason.MAX_INVESTMENT
    assert out.details["invested"] == pytest.approx(91.0)
    assert client.buy_calls == []


def test_max_investment_ignores_closed_and_manual_positions(manager, store):
    pid = _open(store, entry=50.0, quote=500.0)
    store.mark_closed(pid)
    _open(store, entry=60.0, quote=500.0, bot_placed=False)
    client = FakeSpotClient(price=100.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config(max_investment=10.0))
    assert out.status == EXECUTED


class _BrokenTotalStore(PositionStore):
    def open_bot_quote_total(self, user_id):
        raise PersistenceError("database is locked")


def test_max_investment_fails_closed(db, audit, clock):
    store = _BrokenTotalStore(db)
    manager = RiskManager(store, CooldownTracker(clock=clock), TradeExecutor(store, audit))
    client = FakeSpotClient(price=100.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config())
    assert out.reason == Reason.MAX_INVESTMENT
    assert client.buy_calls == []


@pytest.mark.parametrize("entry", [99.61, 100.0, 100.39])
def test_duplicate_band_rejects(manager, store, entry):
    _open(store, entry=entry, quote=10.0)
    client = FakeSpotClient(price=100.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config())
    assert out.status == REJECTED
    assert out.reason == Reason.DUPLICATE_POSITION


@pytest.mark.parametrize("entry", [99.59, 100.41])
def test_outside_duplicate_band_buys(manager, store, entry):
    _open(store, entry=entry, quote=10.0)
    client = FakeSpotClient(price=100.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config())
    assert out.status == EXECUTED


def test_insufficient_quote_balance(manager):
    client = FakeSpotClient(price=100.0, quote_balance=4.0)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config())
    assert out.status == REJECTED
    assert out.reason == Reason.INSUFFICIENT_QUOTE_BALANCE
    assert out.details["required"] == pytest.approx(10.0)
    assert client.buy_calls == []


def test_exchange_rejection_does_not_touch_cooldown(manager, store):
    client = FakeSpotClient(price=100.0, reject_orders=True)
    [out] = manager.process_signal(client, USER, _buy_signal(), _config())
    assert out.status == FAILED
    assert out.reason == Reason.EXCHANGE_ERROR
    assert manager.cooldowns.last_trade(SYMBOL) is None
    assert store.list_positions(USER) == []


def test_network_error_is_a_failed_outcome(manager):
    client = FakeSpotClient(price=100.0)

    def boom(symbol):
        raise TransientNetworkError("timeout")

    client.last_price = boom
    [out] = manager.process_signal(client, USER, _buy_signal(), _config())
    assert out.status == FAILED
    assert out.reason == Reason.NETWORK_ERROR


def test_non_trade_signal_yields_nothing(manager):
    client = FakeSpotClient()
    agg = AggregatedSignal(SYMBOL, Action.NONE, 0.3, 0.3, 0.0)
    assert manager.process_signal(client, USER, agg, _config()) == []
