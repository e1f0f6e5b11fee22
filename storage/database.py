"""
SQLite Storage Layer.
Owns the connection, the schema, and the current-price relation.
All monetary values stored as TEXT to preserve Decimal precision.
"""

from __future__ import annotations
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional
import logging

from exchange.errors import PersistenceError
from exchange.models import PriceState

logger = logging.getLogger(__name__)


@contextmanager
def guarded(action: str) -> Iterator[None]:
    """Re-raise any sqlite3 error as PersistenceError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error(f"[DB] {action} failed: {e}")
        raise PersistenceError(f"{action}: {e}") from e


class Database:
    """SQLite database manager with typed accessors."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self):
        """Initialize database connection and create tables."""
        with guarded("connect"):
            # Autocommit; multi-statement writes use transaction()
            self._conn = sqlite3.connect(self.db_path, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        logger.info(f"[DB] Connected to {self.db_path}")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError("Database not connected")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS candles (
                asset TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                open_time INTEGER NOT NULL,
                open TEXT NOT NULL,
                high TEXT NOT NULL,
                low TEXT NOT NULL,
                close TEXT NOT NULL,
                volume TEXT NOT NULL,
                close_time INTEGER NOT NULL,
                quote_volume TEXT NOT NULL,
                trade_count INTEGER NOT NULL,
                taker_buy_base_volume TEXT NOT NULL,
                taker_buy_quote_volume TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (asset, timeframe, open_time)
            );

            CREATE TABLE IF NOT EXISTS current_prices (
                asset TEXT PRIMARY KEY,
                price TEXT NOT NULL,
                change_24h TEXT NOT NULL DEFAULT '0',
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_candles_open_time ON candles(open_time);
        """)

    # ==================== Price State ====================

    def save_price_state(self, state: PriceState):
        """Overwrite the price row for an asset wholesale."""
        with guarded(f"save price {state.asset}"):
            self.conn.execute(
                """INSERT INTO current_prices (asset, price, change_24h, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(asset) DO UPDATE SET
                       price = excluded.price,
                       change_24h = excluded.change_24h,
                       updated_at = excluded.updated_at""",
                (state.asset, str(state.price), str(state.change_24h), state.updated_at),
            )

    def get_price_state(self, asset: str) -> Optional[PriceState]:
        with guarded(f"read price {asset}"):
            row = self.conn.execute(
                "SELECT * FROM current_prices WHERE asset = ?", (asset,)
            ).fetchone()
        return self._row_to_price(row) if row else None

    def get_all_price_states(self) -> List[PriceState]:
        with guarded("read prices"):
            rows = self.conn.execute(
                "SELECT * FROM current_prices ORDER BY asset"
            ).fetchall()
        return [self._row_to_price(r) for r in rows]

    # ==================== Row Converters ====================

    def _row_to_price(self, row) -> PriceState:
        return PriceState(
            asset=row["asset"],
            price=Decimal(row["price"]),
            change_24h=Decimal(row["change_24h"]),
            updated_at=row["updated_at"],
        )
