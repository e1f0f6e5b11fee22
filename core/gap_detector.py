"""
Gap Detector: finds missing time ranges in a stored candle series.

Read-only: derives gaps from CandleStore open times and the current time.
"""

from __future__ import annotations
from typing import List, TYPE_CHECKING
import logging

from core.intervals import Clock, IntervalPolicy, now_ms
from exchange.models import Gap

if TYPE_CHECKING:
    from storage.candle_store import CandleStore

logger = logging.getLogger(__name__)


class GapDetector:
    """
    Computes the chronological list of gaps for one (asset, timeframe).

    Three cases:
      * empty series      -> one bootstrap gap covering the lookback window
      * interior holes    -> [prev + d, curr - d] for each jump larger than d
      * stale tail        -> [last + d, now] once now > last + 2d

    The trailing gap needs now to pass two intervals after the last open
    time, not one.
    """

    def __init__(self, store: "CandleStore", policy: IntervalPolicy, clock: Clock = now_ms):
        self.store = store
        self.policy = policy
        self.clock = clock

    def find_gaps(self, asset: str, timeframe: str) -> List[Gap]:
        duration = self.policy.duration_of(timeframe)
        open_times = self.store.open_times(asset, timeframe)
        now = self.clock()

        if not open_times:
            window = self.policy.bootstrap_window_of(timeframe)
            return [Gap(start=now - window, end=now, missing_intervals=window // duration)]

        gaps: List[Gap] = []
        for prev, curr in zip(open_times, open_times[1:]):
            expected = prev + duration
            if curr > expected:
                gaps.append(Gap(
                    start=expected,
                    end=curr - duration,
                    missing_intervals=(curr - expected) // duration,
                ))

        last = open_times[-1]
        expected = last + duration
        if now > expected + duration:
            gaps.append(Gap(
                start=expected,
                end=now,
                missing_intervals=(now - expected) // duration,
            ))

        if gaps:
            logger.debug(f"[GAPS] {asset} {timeframe}: {len(gaps)} gaps")
        return gaps
