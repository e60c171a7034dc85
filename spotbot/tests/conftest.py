import pytest

from spotbot.persistence.audit import Audit
from spotbot.persistence.db import DB
from spotbot.persistence.positions import PositionStore


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """
    Ensure tests never hit live trading accidentally.
    """
    monkeypatch.setenv("BINANCE_ENV", "testnet")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("SUPPORTED_SYMBOLS", "BTCUSDC")
    monkeypatch.setenv("DEFAULT_INTERVALS", "3m,5m")
    monkeypatch.setenv("SCHEDULER_INTERVAL_SECONDS", "3600")


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "spotbot.db"))


@pytest.fixture
def store(db):
    return PositionStore(db)


@pytest.fixture
def audit(db, tmp_path):
    return Audit(db, str(tmp_path / "audit.jsonl"))
