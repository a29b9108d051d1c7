"""SQLite ledger for paper-trading orders and positions."""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sideways_trader.models.order import Order
from sideways_trader.models.position import Position
from sideways_trader.storage.base import Ledger

JsonDict = Dict[str, Any]


class SQLiteLedger(Ledger):
    """Ledger backed by a single SQLite file.

    Orders are upserted by ``order_id``; positions are keyed by symbol and
    entry time. Pass ``":memory:"`` for a throwaway database.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.logger = logging.getLogger(__name__)
        path = str(db_path)
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
              order_id TEXT PRIMARY KEY,
              client_order_id TEXT,
              symbol TEXT NOT NULL,
              side TEXT NOT NULL,
              order_type TEXT NOT NULL,
              purpose TEXT,
              quantity REAL NOT NULL,
              price REAL,
              stop_price REAL,
              status TEXT NOT NULL,
              filled_quantity REAL NOT NULL,
              avg_price REAL NOT NULL,
              created_at TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS positions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              symbol TEXT NOT NULL,
              side TEXT NOT NULL,
              quantity REAL NOT NULL,
              entry_price REAL NOT NULL,
              entry_time TEXT NOT NULL,
              is_active INTEGER NOT NULL,
              exit_price REAL,
              exit_time TEXT,
              realized_pnl REAL,
              close_reason TEXT,
              UNIQUE(symbol, entry_time)
            );
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def record_order(self, order: Order) -> None:
        if order.order_id is None:
            raise ValueError("Cannot record an order without order_id")
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO orders(
                  order_id, client_order_id, symbol, side, order_type, purpose,
                  quantity, price, stop_price, status, filled_quantity, avg_price, created_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    order.order_id,
                    order.client_order_id,
                    order.symbol,
                    order.side.value,
                    order.order_type.value,
                    order.purpose.value if order.purpose else None,
                    order.quantity,
                    order.price,
                    order.stop_price,
                    order.status.value,
                    order.filled_quantity,
                    order.avg_price,
                    order.created_at.isoformat(),
                ),
            )
            self._conn.commit()

    def record_position(self, position: Position) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO positions(
                  symbol, side, quantity, entry_price, entry_time, is_active,
                  exit_price, exit_time, realized_pnl, close_reason
                ) VALUES(?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    position.symbol,
                    position.side,
                    position.quantity,
                    position.entry_price,
                    position.entry_time.isoformat(),
                    int(position.is_active),
                    position.exit_price,
                    _iso(position.exit_time),
                    position.realized_pnl,
                    position.close_reason,
                ),
            )
            self._conn.commit()

    def update_position(self, position: Position) -> None:
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE positions
                   SET quantity = ?, entry_price = ?, is_active = ?, exit_price = ?,
                       exit_time = ?, realized_pnl = ?, close_reason = ?
                 WHERE symbol = ? AND entry_time = ?
                """,
                (
                    position.quantity,
                    position.entry_price,
                    int(position.is_active),
                    position.exit_price,
                    _iso(position.exit_time),
                    position.realized_pnl,
                    position.close_reason,
                    position.symbol,
                    position.entry_time.isoformat(),
                ),
            )
            self._conn.commit()
        if cur.rowcount == 0:
            self.logger.warning(
                f"update_position: no recorded position for {position.symbol} "
                f"opened at {position.entry_time.isoformat()}"
            )

    def list_orders(self, symbol: Optional[str] = None, limit: int = 200) -> List[JsonDict]:
        """Most recent orders first."""
        if symbol:
            rows = self._conn.execute(
                "SELECT * FROM orders WHERE symbol = ? ORDER BY created_at DESC LIMIT ?",
                (symbol, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM orders ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]

    def list_positions(self, active_only: bool = False, limit: int = 200) -> List[JsonDict]:
        """Most recently opened positions first."""
        query = "SELECT * FROM positions"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY entry_time DESC LIMIT ?"
        rows = self._conn.execute(query, (limit,)).fetchall()
        return [dict(r) for r in rows]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None
