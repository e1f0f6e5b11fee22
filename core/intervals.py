"""
Interval Policy: timeframe -> bar duration and bootstrap lookback.
"""

from __future__ import annotations
import time
from typing import Callable, Dict, List, Tuple

from exchange.errors import UnknownTimeframe

Clock = Callable[[], int]

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


class IntervalPolicy:
    """Pure lookup over the configured timeframe table."""

    def __init__(self, table: Dict[str, Tuple[int, int]]):
        self._table = dict(table)

    @property
    def timeframes(self) -> List[str]:
        return list(self._table.keys())

    @property
    def finest(self) -> str:
        """Timeframe with the shortest bar duration."""
        return min(self._table, key=lambda tf: self._table[tf][0])

    def duration_of(self, timeframe: str) -> int:
        try:
            return self._table[timeframe][0]
        except KeyError:
            raise UnknownTimeframe(timeframe) from None

    def bootstrap_window_of(self, timeframe: str) -> int:
        try:
            return self._table[timeframe][1]
        except KeyError:
            raise UnknownTimeframe(timeframe) from None
