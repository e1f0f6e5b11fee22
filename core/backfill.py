"""
Backfill Coordinator: fills detected gaps from the historical API.

Per series: gaps in chronological order, pages within a gap sequential.
Across series: concurrent, bounded by a semaphore sized from the pacing
interval so the aggregate request rate stays under the upstream ceiling.
"""

from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TYPE_CHECKING
import aiohttp
import logging

from exchange.errors import MalformedResponse, UpstreamError
from exchange.models import FillResult, Gap, PairResult

if TYPE_CHECKING:
    from config import BackfillConfig
    from core.gap_detector import GapDetector
    from data.historical import HistoricalFetcher
    from storage.candle_store import CandleStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Failures that end one gap's page loop; anything else propagates.
GAP_ERRORS = (UpstreamError, MalformedResponse, aiohttp.ClientError, asyncio.TimeoutError)


class BackfillCoordinator:
    """Drives GapDetector + HistoricalFetcher + CandleStore."""

    def __init__(
        self,
        config: "BackfillConfig",
        detector: "GapDetector",
        fetcher: "HistoricalFetcher",
        store: "CandleStore",
        assets: Iterable[str],
        timeframes: Iterable[str],
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.detector = detector
        self.fetcher = fetcher
        self.store = store
        self.assets = list(assets)
        self.timeframes = list(timeframes)
        self._sleep = sleep
        self._filling = False

    @property
    def is_filling(self) -> bool:
        return self._filling

    async def fill_gap(
        self,
        asset: str,
        timeframe: str,
        gap: Gap,
        max_page_size: Optional[int] = None,
    ) -> FillResult:
        """
        Page through one gap until the cursor passes gap.end (inclusive:
        an interior gap ends on its last missing bar) or upstream runs dry.
        Page/network/parse errors stop this gap only and are recorded.
        """
        page_size = max_page_size or self.config.max_page_size
        result = FillResult()
        cursor = gap.start

        try:
            while cursor <= gap.end:
                candles = await self.fetcher.fetch_page(
                    asset, timeframe, page_size, cursor, gap.end
                )
                if not candles:
                    break

                for candle in candles:
                    self.store.upsert(asset, timeframe, candle)
                result.candles_filled += len(candles)
                logger.debug(f"[BACKFILL] {asset} {timeframe}: +{len(candles)} candles")

                next_cursor = candles[-1].close_time + 1
                if next_cursor <= cursor:
                    logger.warning(
                        f"[BACKFILL] {asset} {timeframe}: page did not advance past {cursor}, stopping"
                    )
                    break
                cursor = next_cursor

                await self._sleep(self.config.pacing_sec)

        except GAP_ERRORS as e:
            msg = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            logger.error(f"[BACKFILL] {asset} {timeframe} gap {gap.start}-{gap.end}: {msg}")
            result.errors.append(msg)

        return result

    async def fill_asset(self, asset: str, timeframe: str) -> FillResult:
        """Detect gaps once, then fill them oldest first."""
        gaps = self.detector.find_gaps(asset, timeframe)
        if not gaps:
            logger.info(f"[BACKFILL] No gaps found for {asset} {timeframe}")
            return FillResult()

        logger.info(f"[BACKFILL] Found {len(gaps)} gaps for {asset} {timeframe}")
        total = FillResult()
        for gap in gaps:
            total = total + await self.fill_gap(asset, timeframe, gap)

        logger.info(
            f"[BACKFILL] {asset} {timeframe}: filled {total.candles_filled} candles, "
            f"{len(total.errors)} errors"
        )
        return total

    async def fill_all(
        self,
        assets: Optional[Iterable[str]] = None,
        timeframes: Optional[Iterable[str]] = None,
    ) -> List[PairResult]:
        """
        Fill every (asset, timeframe) pair concurrently. Returns [] at once
        if another pass is already running.
        """
        if self._filling:
            logger.info("[BACKFILL] Gap filling already in progress")
            return []

        self._filling = True
        try:
            pairs = [
                (asset, tf)
                for asset in (list(assets) if assets is not None else self.assets)
                for tf in (list(timeframes) if timeframes is not None else self.timeframes)
            ]
            limiter = asyncio.Semaphore(self.config.concurrency)
            logger.info(
                f"[BACKFILL] Pass started: {len(pairs)} series, "
                f"{self.config.concurrency} at a time"
            )
            results = await asyncio.gather(
                *(self._fill_pair(asset, tf, limiter) for asset, tf in pairs)
            )
            failed = sum(1 for r in results if not r.complete)
            logger.info(f"[BACKFILL] Pass complete: {len(results)} series, {failed} incomplete")
            return list(results)
        finally:
            self._filling = False

    async def _fill_pair(self, asset: str, timeframe: str, limiter: asyncio.Semaphore) -> PairResult:
        async with limiter:
            try:
                res = await self.fill_asset(asset, timeframe)
            except Exception as e:
                logger.error(f"[BACKFILL] {asset} {timeframe} failed: {e}", exc_info=True)
                return PairResult(asset=asset, timeframe=timeframe, error=str(e) or type(e).__name__)
        return PairResult(
            asset=asset,
            timeframe=timeframe,
            candles_filled=res.candles_filled,
            errors=res.errors,
        )
