"""
Candle Store: idempotent upsert/read over the candles relation.

Both the backfill and the streaming path write through ``upsert``; its
monotonic close-time merge is the only deduplication mechanism.
"""

from __future__ import annotations
from decimal import Decimal
from typing import List, Optional
import logging

from exchange.models import Candle, SeriesStats
from storage.database import Database, guarded

logger = logging.getLogger(__name__)

_COLUMNS = (
    "open_time, open, high, low, close, volume, close_time, quote_volume, "
    "trade_count, taker_buy_base_volume, taker_buy_quote_volume"
)


class CandleStore:
    """Keyed (asset, timeframe, open_time) candle persistence."""

    def __init__(self, db: Database):
        self.db = db

    # ==================== Reads ====================

    def get(self, asset: str, timeframe: str) -> List[Candle]:
        """Full series, ascending by open time."""
        with guarded(f"read {asset} {timeframe}"):
            rows = self.db.conn.execute(
                f"SELECT {_COLUMNS} FROM candles WHERE asset = ? AND timeframe = ? "
                "ORDER BY open_time ASC",
                (asset, timeframe),
            ).fetchall()
        return [self._row_to_candle(r) for r in rows]

    def open_times(self, asset: str, timeframe: str) -> List[int]:
        with guarded(f"read open times {asset} {timeframe}"):
            rows = self.db.conn.execute(
                "SELECT open_time FROM candles WHERE asset = ? AND timeframe = ? "
                "ORDER BY open_time ASC",
                (asset, timeframe),
            ).fetchall()
        return [r["open_time"] for r in rows]

    def read(
        self,
        asset: str,
        timeframe: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
        limit: int = 1000,
    ) -> List[Candle]:
        """
        Newest ``limit`` candles with open time in [start, end], returned
        in chronological order. Either bound may be omitted.
        """
        query = f"SELECT {_COLUMNS} FROM candles WHERE asset = ? AND timeframe = ?"
        params: list = [asset, timeframe]
        if start is not None:
            query += " AND open_time >= ?"
            params.append(start)
        if end is not None:
            query += " AND open_time <= ?"
            params.append(end)
        query += " ORDER BY open_time DESC LIMIT ?"
        params.append(limit)

        with guarded(f"read range {asset} {timeframe}"):
            rows = self.db.conn.execute(query, params).fetchall()
        return [self._row_to_candle(r) for r in reversed(rows)]

    def first_since(self, asset: str, timeframe: str, since: int) -> Optional[Candle]:
        """First candle whose open time is at or after ``since``."""
        with guarded(f"read first since {asset} {timeframe}"):
            row = self.db.conn.execute(
                f"SELECT {_COLUMNS} FROM candles WHERE asset = ? AND timeframe = ? "
                "AND open_time >= ? ORDER BY open_time ASC LIMIT 1",
                (asset, timeframe, since),
            ).fetchone()
        return self._row_to_candle(row) if row else None

    def latest(self, asset: str, timeframe: str) -> Optional[Candle]:
        with guarded(f"read latest {asset} {timeframe}"):
            row = self.db.conn.execute(
                f"SELECT {_COLUMNS} FROM candles WHERE asset = ? AND timeframe = ? "
                "ORDER BY open_time DESC LIMIT 1",
                (asset, timeframe),
            ).fetchone()
        return self._row_to_candle(row) if row else None

    def stats(self) -> List[SeriesStats]:
        """Count and open-time range per (asset, timeframe)."""
        with guarded("read stats"):
            rows = self.db.conn.execute(
                """SELECT asset, timeframe, COUNT(*) AS count,
                          MIN(open_time) AS oldest, MAX(open_time) AS newest
                   FROM candles
                   GROUP BY asset, timeframe
                   ORDER BY asset, timeframe"""
            ).fetchall()
        return [
            SeriesStats(
                asset=r["asset"],
                timeframe=r["timeframe"],
                count=r["count"],
                oldest=r["oldest"],
                newest=r["newest"],
            )
            for r in rows
        ]

    # ==================== Writes ====================

    def upsert(self, asset: str, timeframe: str, candle: Candle) -> bool:
        """
        Insert the candle, or merge it into the stored row when its close
        time is strictly newer. Returns False when the write was a no-op.

        Merge keeps the running max high / min low and takes close, volume,
        close time and trade metadata from the incoming candle. Open is
        never changed after the first write.
        """
        with guarded(f"upsert {asset} {timeframe} {candle.open_time}"):
            with self.db.transaction() as conn:
                row = conn.execute(
                    "SELECT high, low, close_time FROM candles "
                    "WHERE asset = ? AND timeframe = ? AND open_time = ?",
                    (asset, timeframe, candle.open_time),
                ).fetchone()

                if row is None:
                    conn.execute(
                        f"INSERT INTO candles (asset, timeframe, {_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            asset, timeframe, candle.open_time,
                            str(candle.open), str(candle.high), str(candle.low),
                            str(candle.close), str(candle.volume), candle.close_time,
                            str(candle.quote_volume), candle.trade_count,
                            str(candle.taker_buy_base_volume),
                            str(candle.taker_buy_quote_volume),
                        ),
                    )
                    return True

                if candle.close_time <= row["close_time"]:
                    return False

                high = max(Decimal(row["high"]), candle.high)
                low = min(Decimal(row["low"]), candle.low)
                conn.execute(
                    """UPDATE candles SET high=?, low=?, close=?, volume=?, close_time=?,
                       quote_volume=?, trade_count=?, taker_buy_base_volume=?,
                       taker_buy_quote_volume=?
                       WHERE asset=? AND timeframe=? AND open_time=?""",
                    (
                        str(high), str(low), str(candle.close), str(candle.volume),
                        candle.close_time, str(candle.quote_volume), candle.trade_count,
                        str(candle.taker_buy_base_volume),
                        str(candle.taker_buy_quote_volume),
                        asset, timeframe, candle.open_time,
                    ),
                )
                return True

    def delete_older_than(self, timeframe: str, cutoff: int) -> int:
        """Delete one timeframe's candles opened before ``cutoff``."""
        with guarded(f"delete {timeframe} before {cutoff}"):
            cursor = self.db.conn.execute(
                "DELETE FROM candles WHERE timeframe = ? AND open_time < ?",
                (timeframe, cutoff),
            )
        logger.info(f"[STORE] Deleted {cursor.rowcount} {timeframe} candles older than {cutoff}")
        return cursor.rowcount

    def delete_future(self, now: int) -> int:
        """Drop rows stamped in the future (clock skew or synthetic data)."""
        with guarded("delete future candles"):
            cursor = self.db.conn.execute(
                "DELETE FROM candles WHERE open_time > ?", (now,)
            )
        if cursor.rowcount:
            logger.warning(f"[STORE] Purged {cursor.rowcount} candles with future open time")
        return cursor.rowcount

    # ==================== Row Converters ====================

    def _row_to_candle(self, row) -> Candle:
        return Candle(
            open_time=row["open_time"],
            open=Decimal(row["open"]),
            high=Decimal(row["high"]),
            low=Decimal(row["low"]),
            close=Decimal(row["close"]),
            volume=Decimal(row["volume"]),
            close_time=row["close_time"],
            quote_volume=Decimal(row["quote_volume"]),
            trade_count=row["trade_count"],
            taker_buy_base_volume=Decimal(row["taker_buy_base_volume"]),
            taker_buy_quote_volume=Decimal(row["taker_buy_quote_volume"]),
        )
