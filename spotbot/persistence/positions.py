# spotbot/persistence/positions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from spotbot.persistence.db import DB, utc_now_iso


@dataclass
class Position:
    id: Optional[int]
    user_id: str
    symbol: str
    entry_price: float
    quantity: float
    quote_value: Optional[float]
    commission: float = 0.0
    commission_asset: Optional[str] = None
    opened_at: str = ""
    closed: bool = False
    bot_placed: bool = True
    order_id: Optional[str] = None
    exchange: str = "Binance"


@dataclass(frozen=True)
class Sale:
    id: Optional[int]
    position_id: int
    user_id: str
    symbol: str
    exit_price: float
    quantity: float
    commission: float
    commission_asset: Optional[str]
    profit: float
    profit_pct: float
    closed_at: str
    order_id: Optional[str] = None
    bot_placed: bool = True
    exchange: str = "Binance"


def _row_to_position(r) -> Position:
    return Position(
        id=int(r["id"]),
        user_id=r["user_id"],
        symbol=r["symbol"],
        entry_price=float(r["entry_price"]),
        quantity=float(r["quantity"]),
        quote_value=float(r["quote_value"]) if r["quote_value"] is not None else None,
        commission=float(r["commission"] or 0.0),
        commission_asset=r["commission_asset"],
        opened_at=r["opened_at"],
        closed=bool(r["closed"]),
        bot_placed=bool(r["bot_placed"]),
        order_id=r["order_id"],
        exchange=r["exchange"],
    )


def _row_to_sale(r) -> Sale:
    return Sale(
        id=int(r["id"]),
        position_id=int(r["position_id"]),
        user_id=r["user_id"],
        symbol=r["symbol"],
        exit_price=float(r["exit_price"]),
        quantity=float(r["quantity"]),
        commission=float(r["commission"] or 0.0),
        commission_asset=r["commission_asset"],
        profit=float(r["profit"]),
        profit_pct=float(r["profit_pct"]),
        closed_at=r["closed_at"],
        order_id=r["order_id"],
        bot_placed=bool(r["bot_placed"]),
        exchange=r["exchange"],
    )


class PositionStore:
    """
    Positions ("buys") and sales. Positions are only ever inserted or flipped
    to closed; sales are insert-only.
    """

    def __init__(self, db: DB):
        self.db = db

    # ---------- POSITIONS ----------
    def insert_position(self, p: Position) -> int:
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO positions(
                    user_id, exchange, order_id, symbol, entry_price, quantity,
                    quote_value, commission, commission_asset, opened_at, closed, bot_placed
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    p.user_id,
                    p.exchange,
                    p.order_id,
                    p.symbol.upper(),
                    float(p.entry_price),
                    float(p.quantity),
                    float(p.quote_value) if p.quote_value is not None else None,
                    float(p.commission or 0.0),
                    p.commission_asset,
                    p.opened_at or utc_now_iso(),
                    1 if p.closed else 0,
                    1 if p.bot_placed else 0,
                ),
            )
            return int(cur.lastrowid)

    def mark_closed(self, position_id: int) -> None:
        with self.db.connect() as conn:
            conn.execute("UPDATE positions SET closed = 1 WHERE id = ?", (int(position_id),))

    def get_position(self, position_id: int) -> Optional[Position]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM positions WHERE id = ?", (int(position_id),)
            ).fetchone()
        return _row_to_position(row) if row else None

    def list_positions(self, user_id: str, open_only: bool = False) -> List[Position]:
        sql = "SELECT * FROM positions WHERE user_id = ?"
        if open_only:
            sql += " AND closed = 0"
        sql += " ORDER BY opened_at ASC, id ASC"
        with self.db.connect() as conn:
            rows = conn.execute(sql, (user_id,)).fetchall()
        return [_row_to_position(r) for r in rows]

    def open_bot_quote_total(self, user_id: str) -> float:
        """Sum of quote value over the user's open, bot-placed positions."""
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(COALESCE(quote_value, 0)), 0) AS total
                FROM positions
                WHERE user_id = ? AND bot_placed = 1 AND closed = 0
                """,
                (user_id,),
            ).fetchone()
        return float(row["total"] or 0.0)

    def has_open_in_price_range(
        self, user_id: str, symbol: str, low: float, high: float
    ) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT id FROM positions
                WHERE user_id = ? AND symbol = ? AND bot_placed = 1 AND closed = 0
                  AND entry_price >= ? AND entry_price <= ?
                LIMIT 1
                """,
                (user_id, symbol.upper(), float(low), float(high)),
            ).fetchone()
        return row is not None

    def open_bot_positions_below(
        self, user_id: str, symbol: str, max_entry_price: float
    ) -> List[Position]:
        """Open bot positions with entry price strictly below the bound, oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM positions
                WHERE user_id = ? AND symbol = ? AND bot_placed = 1 AND closed = 0
                  AND entry_price < ?
                ORDER BY opened_at ASC, id ASC
                """,
                (user_id, symbol.upper(), float(max_entry_price)),
            ).fetchall()
        return [_row_to_position(r) for r in rows]

    # ---------- SALES ----------
    def insert_sale(self, s: Sale) -> int:
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO sales(
                    position_id, user_id, exchange, order_id, symbol, exit_price, quantity,
                    commission, commission_asset, profit, profit_pct, closed_at, bot_placed
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    int(s.position_id),
                    s.user_id,
                    s.exchange,
                    s.order_id,
                    s.symbol.upper(),
                    float(s.exit_price),
                    float(s.quantity),
                    float(s.commission or 0.0),
                    s.commission_asset,
                    float(s.profit),
                    float(s.profit_pct),
                    s.closed_at or utc_now_iso(),
                    1 if s.bot_placed else 0,
                ),
            )
            return int(cur.lastrowid)

    def list_sales(self, user_id: str) -> List[Sale]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sales WHERE user_id = ? ORDER BY closed_at ASC, id ASC",
                (user_id,),
            ).fetchall()
        return [_row_to_sale(r) for r in rows]

    def sales_for_position(self, position_id: int) -> List[Sale]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sales WHERE position_id = ? ORDER BY id ASC",
                (int(position_id),),
            ).fetchall()
        return [_row_to_sale(r) for r in rows]
