from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from stockfeed.errors import PersistenceError
from stockfeed.events import Quote
from stockfeed.market_data import to_utc, utcnow
from stockfeed.models import Order, OrderStatus, OrderType, Side


def _ts(value: datetime) -> str:
    # Fixed-width UTC ISO strings so that TEXT ordering is time ordering.
    return to_utc(value).isoformat(timespec="microseconds")


class Database:
    """SQLite store for the latest-quote table, the quote history and the order journal.

    The connection is shared by the consumer thread, the ledger and CLI readers,
    so every statement runs under one lock.
    """

    def __init__(self, sqlite_path: str) -> None:
        self.path = Path(sqlite_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.path.as_posix(), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._apply_schema()

    def _apply_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        with self._lock:
            self.conn.executescript(schema_path.read_text(encoding="utf-8"))
            self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        with self._lock:
            try:
                cur = self.conn.execute(sql, params)
                self.conn.commit()
                return cur
            except sqlite3.Error as exc:
                try:
                    self.conn.rollback()
                except sqlite3.Error:
                    pass
                raise PersistenceError(str(exc)) from exc

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    # Latest sink

    def upsert_latest(self, q: Quote) -> bool:
        """Upsert the latest row for ``q.symbol``. Returns False when a newer row is already stored."""
        cur = self._write(
            """
            INSERT INTO stock_latest(symbol, price, change, change_percent, ts, updated_ts)
            VALUES(?,?,?,?,?,?)
            ON CONFLICT(symbol) DO UPDATE SET
                price=excluded.price,
                change=excluded.change,
                change_percent=excluded.change_percent,
                ts=excluded.ts,
                updated_ts=excluded.updated_ts
            WHERE excluded.ts > stock_latest.ts
            """,
            (q.symbol, str(q.price), str(q.change), str(q.change_percent), _ts(q.ts), _ts(utcnow())),
        )
        return cur.rowcount > 0

    def get_latest(self, symbol: str) -> Optional[Quote]:
        rows = self._read(
            "SELECT symbol, price, change, change_percent, ts FROM stock_latest WHERE symbol = ?",
            (symbol,),
        )
        return _row_to_quote(rows[0]) if rows else None

    def get_latest_price(self, symbol: str) -> Optional[Decimal]:
        q = self.get_latest(symbol)
        return q.price if q else None

    def list_latest(self) -> list[Quote]:
        rows = self._read("SELECT symbol, price, change, change_percent, ts FROM stock_latest")
        return [_row_to_quote(r) for r in rows]

    # History sink

    def insert_history(self, q: Quote) -> None:
        self._write(
            """
            INSERT INTO stock_history(symbol, price, change, change_percent, ts)
            VALUES(?,?,?,?,?)
            """,
            (q.symbol, str(q.price), str(q.change), str(q.change_percent), _ts(q.ts)),
        )

    def get_history(
        self,
        symbol: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Quote]:
        query = "SELECT symbol, price, change, change_percent, ts FROM stock_history WHERE symbol = ?"
        params: list[Any] = [symbol]
        if start is not None:
            query += " AND ts >= ?"
            params.append(_ts(start))
        if end is not None:
            query += " AND ts <= ?"
            params.append(_ts(end))
        if limit:
            # Most recent ``limit`` rows, still returned oldest first.
            query += " ORDER BY ts DESC, id DESC LIMIT ?"
            params.append(int(limit))
            rows = list(reversed(self._read(query, tuple(params))))
        else:
            query += " ORDER BY ts ASC, id ASC"
            rows = self._read(query, tuple(params))
        return [_row_to_quote(r) for r in rows]

    # Order journal

    def insert_order(self, order: Order) -> None:
        self._write(
            """
            INSERT OR IGNORE INTO orders(order_id, symbol, side, order_type, qty, price, total, status, ts)
            VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (
                order.order_id,
                order.symbol,
                order.side.value,
                order.order_type.value,
                order.qty,
                str(order.price),
                str(order.total),
                order.status.value,
                _ts(order.ts),
            ),
        )

    def list_orders(self) -> list[Order]:
        """Journaled orders in fill order."""
        rows = self._read(
            """
            SELECT order_id, symbol, side, order_type, qty, price, total, status, ts
            FROM orders ORDER BY seq ASC
            """
        )
        return [
            Order(
                order_id=row["order_id"],
                symbol=row["symbol"],
                side=Side(row["side"]),
                order_type=OrderType(row["order_type"]),
                qty=int(row["qty"]),
                price=Decimal(row["price"]),
                status=OrderStatus(row["status"]),
                ts=datetime.fromisoformat(row["ts"]),
                total=Decimal(row["total"]),
            )
            for row in rows
        ]


def _row_to_quote(row: sqlite3.Row) -> Quote:
    return Quote(
        symbol=row["symbol"],
        price=Decimal(row["price"]),
        change=Decimal(row["change"]),
        change_percent=Decimal(row["change_percent"]),
        ts=datetime.fromisoformat(row["ts"]),
    )
