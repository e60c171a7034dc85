from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from spotbot.core.errors import PersistenceError


# =========================
# Time helpers
# =========================
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ms_to_iso(ms: int | None) -> str:
    if ms is None:
        return utc_now_iso()
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path comes from settings.DB_PATH.
    """

    def __init__(self, path: str = "data/spotbot.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """
        One connection per unit of work; commits on success.
        sqlite3 errors surface as PersistenceError.
        """
        try:
            conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"{type(e).__name__}: {e}") from e
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # =========================
            # Positions (bot / manual buys)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    exchange TEXT NOT NULL DEFAULT 'Binance',
                    order_id TEXT,
                    symbol TEXT NOT NULL,
                    entry_price REAL NOT NULL,
                    quantity REAL NOT NULL,
                    quote_value REAL,
                    commission REAL NOT NULL DEFAULT 0,
                    commission_asset TEXT,
                    opened_at TEXT NOT NULL,
                    closed INTEGER NOT NULL DEFAULT 0,
                    bot_placed INTEGER NOT NULL DEFAULT 1
                )
                """
            )

            # =========================
            # Sales (immutable once written)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sales (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    position_id INTEGER NOT NULL,
                    user_id TEXT NOT NULL,
                    exchange TEXT NOT NULL DEFAULT 'Binance',
                    order_id TEXT,
                    symbol TEXT NOT NULL,
                    exit_price REAL NOT NULL,
                    quantity REAL NOT NULL,
                    commission REAL NOT NULL DEFAULT 0,
                    commission_asset TEXT,
                    profit REAL NOT NULL,
                    profit_pct REAL NOT NULL,
                    closed_at TEXT NOT NULL,
                    bot_placed INTEGER NOT NULL DEFAULT 1,
                    FOREIGN KEY(position_id) REFERENCES positions(id)
                )
                """
            )

            # =========================
            # Exchange links (encrypted credentials)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS exchange_links (
                    user_id TEXT PRIMARY KEY,
                    exchange TEXT NOT NULL DEFAULT 'Binance',
                    api_key_enc TEXT NOT NULL,
                    api_secret_enc TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    cycle_id TEXT,
                    user_id TEXT,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_positions_open ON positions(user_id, symbol, closed, bot_placed)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sales_user ON sales(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_cycle ON events(cycle_id)")

            conn.commit()

        finally:
            conn.close()
