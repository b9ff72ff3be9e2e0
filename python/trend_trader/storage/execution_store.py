"""Execution storage using SQLite.

Stores:
- Settled orders, tagged with the cycle they belong to

The journal is an audit trail only; trading state is never restored from it.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List

from ..config import DatabaseConfig
from ..models.types import Order

logger = logging.getLogger(__name__)


class ExecutionStore:
    """SQLite storage for settled order history."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.db_path = Path(config.data_dir) / config.execution_db
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> None:
        """Connect to the database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Read by the diagnostics API, which may serve from another thread
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._create_tables()
        logger.info(f"Connected to execution store: {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS settled_orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id TEXT NOT NULL UNIQUE,
                cycle INTEGER NOT NULL,
                product_id TEXT NOT NULL,
                side TEXT NOT NULL,
                price REAL NOT NULL,
                size REAL NOT NULL,
                filled_size REAL DEFAULT 0,
                time_in_force TEXT,
                settled_at TEXT NOT NULL
            )
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_settled_orders_cycle
            ON settled_orders (cycle)
        """)

        self._conn.commit()

    def save_order(self, order: Order, cycle: int) -> int:
        """Record a settled order; re-saving the same order id is a no-op."""
        cursor = self._conn.execute("""
            INSERT OR IGNORE INTO settled_orders (
                order_id, cycle, product_id, side, price, size,
                filled_size, time_in_force, settled_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            order.id,
            cycle,
            order.product_id,
            order.side.value,
            order.price,
            order.size,
            order.filled_size,
            order.time_in_force,
            datetime.now(timezone.utc).isoformat(),
        ])
        self._conn.commit()
        return cursor.lastrowid

    def get_orders(
        self,
        product_id: str,
        cycle: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Query settled orders, newest first."""
        query = "SELECT * FROM settled_orders WHERE product_id = ?"
        params: list = [product_id]

        if cycle is not None:
            query += " AND cycle = ?"
            params.append(cycle)

        query += " ORDER BY id DESC"

        if limit:
            query += " LIMIT ?"
            params.append(limit)

        cursor = self._conn.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def get_order_stats(self, product_id: str) -> dict:
        """Summarize settled orders and round trips."""
        cursor = self._conn.execute("""
            SELECT
                COUNT(*) as total_orders,
                SUM(CASE WHEN side = 'buy' THEN 1 ELSE 0 END) as buys,
                SUM(CASE WHEN side = 'sell' THEN 1 ELSE 0 END) as sells,
                SUM(CASE WHEN side = 'buy' THEN price * size ELSE 0 END) as bought_notional,
                SUM(CASE WHEN side = 'sell' THEN price * size ELSE 0 END) as sold_notional,
                COUNT(DISTINCT cycle) as cycles
            FROM settled_orders
            WHERE product_id = ?
        """, [product_id])
        row = cursor.fetchone()

        if not row or row["total_orders"] == 0:
            return {
                "total_orders": 0,
                "buys": 0,
                "sells": 0,
                "cycles": 0,
            }

        return {
            "total_orders": row["total_orders"],
            "buys": row["buys"] or 0,
            "sells": row["sells"] or 0,
            "bought_notional": row["bought_notional"] or 0.0,
            "sold_notional": row["sold_notional"] or 0.0,
            "cycles": row["cycles"],
        }
