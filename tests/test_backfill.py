"""
Tests for the Backfill Coordinator.

Uses a fake paginated fetcher over an in-memory upstream series and the
real SQLite candle store.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from config import BackfillConfig
from core.backfill import BackfillCoordinator
from core.gap_detector import GapDetector
from exchange.errors import PersistenceError, UpstreamError
from exchange.models import Gap

from conftest import HOUR, T0


class FakeFetcher:
    """Serves ``available`` candles in pages, like the klines endpoint."""

    def __init__(self, make_candle, hours, fail_on_call=None, error=None):
        self.available = [make_candle(T0 + h * HOUR) for h in hours]
        self.calls = []
        self.fail_on_call = fail_on_call
        self.error = error or UpstreamError(500, "boom")

    async def fetch_page(self, asset, timeframe, max_count, range_start, range_end):
        self.calls.append((asset, timeframe, max_count, range_start, range_end))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise self.error
        page = [c for c in self.available if range_start <= c.open_time <= range_end]
        return page[:max_count]


def _coordinator(config, fetcher, store, detector=None, assets=("BTC",), timeframes=("1h",)):
    return BackfillCoordinator(
        config=config,
        detector=detector or MagicMock(),
        fetcher=fetcher,
        store=store,
        assets=assets,
        timeframes=timeframes,
        sleep=AsyncMock(),
    )


# =============================================================================
# fill_gap
# =============================================================================


class TestFillGap:
    """Paging through one gap."""

    @pytest.mark.asyncio
    async def test_pages_until_gap_covered(self, backfill_config, store, make_candle):
        fetcher = FakeFetcher(make_candle, range(10))
        coord = _coordinator(backfill_config, fetcher, store)

        result = await coord.fill_gap("BTC", "1h", Gap(T0, T0 + 9 * HOUR, 10), max_page_size=3)

        assert result.candles_filled == 10
        assert result.errors == []
        assert len(fetcher.calls) == 4
        assert all(call[2] == 3 for call in fetcher.calls)
        assert store.open_times("BTC", "1h") == [T0 + h * HOUR for h in range(10)]
        assert coord._sleep.await_count == 4
        coord._sleep.assert_awaited_with(backfill_config.pacing_sec)

    @pytest.mark.asyncio
    async def test_cursor_advances_past_last_close_time(self, backfill_config, store, make_candle):
        fetcher = FakeFetcher(make_candle, range(4))
        coord = _coordinator(backfill_config, fetcher, store)

        await coord.fill_gap("BTC", "1h", Gap(T0, T0 + 3 * HOUR, 4), max_page_size=2)

        assert fetcher.calls[1][3] == T0 + 2 * HOUR  # (T0 + HOUR + HOUR - 1) + 1

    @pytest.mark.asyncio
    async def test_single_bar_gap_is_fetched(self, backfill_config, store, make_candle):
        fetcher = FakeFetcher(make_candle, [3])
        coord = _coordinator(backfill_config, fetcher, store)

        result = await coord.fill_gap("BTC", "1h", Gap(T0 + 3 * HOUR, T0 + 3 * HOUR, 1))

        assert result.candles_filled == 1
        assert store.open_times("BTC", "1h") == [T0 + 3 * HOUR]

    @pytest.mark.asyncio
    async def test_empty_page_stops(self, backfill_config, store, make_candle):
        fetcher = FakeFetcher(make_candle, [])
        coord = _coordinator(backfill_config, fetcher, store)

        result = await coord.fill_gap("BTC", "1h", Gap(T0, T0 + 100 * HOUR, 100))

        assert result.candles_filled == 0
        assert len(fetcher.calls) == 1
        coord._sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overlapping_candles_are_deduplicated(self, backfill_config, store, make_candle):
        for h in (2, 3):
            store.upsert("BTC", "1h", make_candle(T0 + h * HOUR))
        fetcher = FakeFetcher(make_candle, range(6))
        coord = _coordinator(backfill_config, fetcher, store)

        await coord.fill_gap("BTC", "1h", Gap(T0, T0 + 5 * HOUR, 6), max_page_size=4)

        assert store.open_times("BTC", "1h") == [T0 + h * HOUR for h in range(6)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        UpstreamError(503, "unavailable"),
        aiohttp.ClientConnectionError("reset"),
        asyncio.TimeoutError(),
    ])
    async def test_page_failure_is_recorded_and_stops_gap(self, backfill_config, store, make_candle, error):
        fetcher = FakeFetcher(make_candle, range(10), fail_on_call=2, error=error)
        coord = _coordinator(backfill_config, fetcher, store)

        result = await coord.fill_gap("BTC", "1h", Gap(T0, T0 + 9 * HOUR, 10), max_page_size=3)

        assert result.candles_filled == 3
        assert len(result.errors) == 1
        assert type(error).__name__ in result.errors[0]
        assert len(fetcher.calls) == 2
        assert len(store.get("BTC", "1h")) == 3

    @pytest.mark.asyncio
    async def test_persistence_error_propagates(self, backfill_config, make_candle):
        store = MagicMock()
        store.upsert.side_effect = PersistenceError("disk full")
        fetcher = FakeFetcher(make_candle, range(3))
        coord = _coordinator(backfill_config, fetcher, store)

        with pytest.raises(PersistenceError):
            await coord.fill_gap("BTC", "1h", Gap(T0, T0 + 2 * HOUR, 3))

    @pytest.mark.asyncio
    async def test_non_advancing_page_stops(self, backfill_config, store, make_candle):
        stuck = make_candle(T0, close_time=T0 - 10)
        fetcher = MagicMock()
        fetcher.fetch_page = AsyncMock(return_value=[stuck])
        coord = _coordinator(backfill_config, fetcher, store)

        result = await coord.fill_gap("BTC", "1h", Gap(T0, T0 + 5 * HOUR, 5))

        assert fetcher.fetch_page.await_count == 1
        assert result.candles_filled == 1


# =============================================================================
# fill_asset
# =============================================================================


class TestFillAsset:
    """Gap detection + sequential gap filling for one series."""

    @pytest.mark.asyncio
    async def test_fills_detected_gaps_in_order(self, backfill_config, store, policy, make_candle):
        for h in (0, 3, 4, 8):
            store.upsert("BTC", "1h", make_candle(T0 + h * HOUR))
        detector = GapDetector(store, policy, clock=lambda: T0 + 8 * HOUR + 30 * 60_000)
        fetcher = FakeFetcher(make_candle, range(9))
        coord = _coordinator(backfill_config, fetcher, store, detector=detector)

        result = await coord.fill_asset("BTC", "1h")

        assert result.candles_filled == 5  # 1h, 2h, 5h, 6h, 7h
        assert [call[3] for call in fetcher.calls] == [T0 + HOUR, T0 + 5 * HOUR]
        assert store.open_times("BTC", "1h") == [T0 + h * HOUR for h in range(9)]
        assert detector.find_gaps("BTC", "1h") == []

    @pytest.mark.asyncio
    async def test_later_gap_failure_keeps_earlier_progress(self, backfill_config, store, make_candle):
        detector = MagicMock()
        detector.find_gaps.return_value = [
            Gap(T0, T0 + HOUR, 2),
            Gap(T0 + 5 * HOUR, T0 + 6 * HOUR, 2),
        ]
        fetcher = FakeFetcher(make_candle, range(8), fail_on_call=2)
        coord = _coordinator(backfill_config, fetcher, store, detector=detector)

        result = await coord.fill_asset("BTC", "1h")

        assert result.candles_filled == 2
        assert len(result.errors) == 1
        assert store.open_times("BTC", "1h") == [T0, T0 + HOUR]

    @pytest.mark.asyncio
    async def test_no_gaps(self, backfill_config, store, make_candle):
        detector = MagicMock()
        detector.find_gaps.return_value = []
        fetcher = FakeFetcher(make_candle, range(3))
        coord = _coordinator(backfill_config, fetcher, store, detector=detector)

        result = await coord.fill_asset("BTC", "1h")

        assert result.candles_filled == 0
        assert fetcher.calls == []


# =============================================================================
# fill_all
# =============================================================================


class TestFillAll:
    """Fan-out, per-pair isolation, concurrency bound and in-flight guard."""

    @pytest.mark.asyncio
    async def test_covers_cartesian_product(self, backfill_config, store, make_candle):
        detector = MagicMock()
        detector.find_gaps.return_value = [Gap(T0, T0 + HOUR, 2)]
        fetcher = FakeFetcher(make_candle, range(2))
        coord = _coordinator(backfill_config, fetcher, store, detector=detector,
                             assets=("BTC", "ETH"), timeframes=("5m", "1h", "1d"))

        results = await coord.fill_all()

        assert {(r.asset, r.timeframe) for r in results} == {
            (a, tf) for a in ("BTC", "ETH") for tf in ("5m", "1h", "1d")
        }
        assert all(r.candles_filled == 2 and r.complete for r in results)
        assert coord.is_filling is False

    @pytest.mark.asyncio
    async def test_pair_failure_is_isolated(self, backfill_config, store, make_candle):
        def find_gaps(asset, timeframe):
            if asset == "ETH":
                raise PersistenceError("locked")
            return [Gap(T0, T0 + HOUR, 2)]

        detector = MagicMock()
        detector.find_gaps.side_effect = find_gaps
        coord = _coordinator(backfill_config, FakeFetcher(make_candle, range(2)), store,
                             detector=detector, assets=("BTC", "ETH", "SOL"))

        results = {r.asset: r for r in await coord.fill_all()}

        assert results["ETH"].error == "locked"
        assert results["ETH"].complete is False
        assert results["BTC"].candles_filled == 2
        assert results["SOL"].candles_filled == 2

    @pytest.mark.asyncio
    async def test_gap_errors_reported_per_pair(self, backfill_config, store, make_candle):
        detector = MagicMock()
        detector.find_gaps.return_value = [Gap(T0, T0 + HOUR, 2)]
        fetcher = FakeFetcher(make_candle, range(2), fail_on_call=1)
        coord = _coordinator(backfill_config, fetcher, store, detector=detector)

        [result] = await coord.fill_all()

        assert result.error is None
        assert result.candles_filled == 0
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, make_candle):
        config = BackfillConfig(max_concurrent_pairs=2)
        active = 0
        peak = 0

        detector = MagicMock()
        detector.find_gaps.return_value = [Gap(T0, T0, 1)]

        fetcher = MagicMock()

        async def fetch_page(*args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            for _ in range(3):
                await asyncio.sleep(0)
            active -= 1
            return []

        fetcher.fetch_page = fetch_page
        coord = _coordinator(config, fetcher, store, detector=detector,
                             assets=("BTC", "ETH", "SOL", "ADA"), timeframes=("5m", "1h"))

        results = await coord.fill_all()

        assert len(results) == 8
        assert peak == 2

    @pytest.mark.asyncio
    async def test_second_call_while_running_returns_empty(self, backfill_config, store, make_candle):
        release = asyncio.Event()
        started = asyncio.Event()

        detector = MagicMock()
        detector.find_gaps.return_value = [Gap(T0, T0, 1)]
        fetcher = MagicMock()

        async def fetch_page(*args):
            started.set()
            await release.wait()
            return []

        fetcher.fetch_page = fetch_page
        coord = _coordinator(backfill_config, fetcher, store, detector=detector)

        first = asyncio.create_task(coord.fill_all())
        await asyncio.wait_for(started.wait(), timeout=1)

        assert coord.is_filling is True
        assert await coord.fill_all() == []
        assert not first.done()

        release.set()
        results = await asyncio.wait_for(first, timeout=1)
        assert len(results) == 1
        assert coord.is_filling is False

        # Guard released: a new pass runs again
        assert len(await coord.fill_all()) == 1


class TestBackfillConfig:

    def test_concurrency_derived_from_pacing(self):
        assert BackfillConfig(pacing_sec=0.1, requests_per_minute=1200).concurrency == 1
        assert BackfillConfig(pacing_sec=0.15, requests_per_minute=1200).concurrency == 2
        assert BackfillConfig(pacing_sec=0.5, requests_per_minute=1200).concurrency == 9
        assert BackfillConfig(pacing_sec=0.01, requests_per_minute=1200).concurrency == 1

    @pytest.mark.parametrize("pacing_sec", [0.05, 0.1, 0.15, 0.25, 0.3, 0.5, 1.0])
    def test_aggregate_rate_stays_below_ceiling(self, pacing_sec):
        config = BackfillConfig(pacing_sec=pacing_sec, requests_per_minute=1200)
        per_minute = config.concurrency * 60 / pacing_sec
        assert per_minute < 1200 or config.concurrency == 1

    def test_explicit_concurrency_wins(self):
        assert BackfillConfig(max_concurrent_pairs=5).concurrency == 5
