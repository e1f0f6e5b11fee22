"""
Candle Backfill Service: Main Orchestrator.
Ties all components together: startup, backfill, live stream, schedules, shutdown.
"""

from __future__ import annotations
import asyncio
import os
import sys
import signal
from decimal import Decimal
from typing import List, Optional
import logging

from dotenv import load_dotenv

from config import ServiceConfig
from core.backfill import BackfillCoordinator
from core.gap_detector import GapDetector
from core.intervals import DAY_MS, IntervalPolicy, now_ms
from core.price_tracker import PriceTracker
from core.scheduler import Scheduler
from data.historical import HistoricalFetcher
from data.stream import StreamIngestor
from exchange.binance_rest import BinanceRestClient
from exchange.errors import ConfigurationError, UnknownAsset
from exchange.models import Candle, FillResult, Gap, PairResult, PriceState, SeriesStats
from notifications.telegram import TelegramNotifier
from storage.candle_store import CandleStore
from storage.database import Database

logger = logging.getLogger(__name__)


def setup_logging(level: str, log_dir: str):
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(os.path.join(log_dir, "candles.log")),
        ],
    )


class MarketDataService:
    """Main service orchestrator and the surface an HTTP layer would call."""

    def __init__(self, config: ServiceConfig):
        config.validate()
        self.config = config
        self._closing = False
        self._closed = asyncio.Event()
        self._stream_task: Optional[asyncio.Task] = None
        self._boot_task: Optional[asyncio.Task] = None

        self.policy = IntervalPolicy(config.market.timeframes)
        self.assets = list(config.market.assets)

        # Storage
        self.db = Database(config.storage.db_path)
        self.store = CandleStore(self.db)

        # Upstream
        self.client = BinanceRestClient(
            base_url=config.exchange.rest_base_url,
            timeout_sec=config.exchange.request_timeout_sec,
        )
        self.fetcher = HistoricalFetcher(self.client, config.market)
        self.notifier = TelegramNotifier(
            bot_token=config.notifications.telegram_bot_token,
            chat_id=config.notifications.telegram_chat_id,
            enabled=config.notifications.enabled,
        )

        # Engines
        self.detector = GapDetector(self.store, self.policy)
        self.backfill = BackfillCoordinator(
            config=config.backfill,
            detector=self.detector,
            fetcher=self.fetcher,
            store=self.store,
            assets=self.assets,
            timeframes=self.policy.timeframes,
        )
        self.prices = PriceTracker(self.db, self.store, reference_timeframe=self.policy.finest)
        self.ingestor = StreamIngestor(
            market=config.market,
            config=config.stream,
            ws_base_url=config.exchange.ws_base_url,
            store=self.store,
            price_hook=self.prices.on_new_price,
        )
        self.scheduler = Scheduler()
        self.scheduler.add_job("backfill", config.schedule.backfill_interval_sec, self._scheduled_backfill)
        self.scheduler.add_job("price_refresh", config.schedule.price_refresh_interval_sec, self.recompute_prices)
        self.scheduler.add_job("retention", config.schedule.retention_interval_sec, self._scheduled_cleanup)

    # ==================== Exposed Operations ====================

    def find_gaps(self, asset: str, timeframe: str) -> List[Gap]:
        self._check_asset(asset)
        return self.detector.find_gaps(asset, timeframe)

    async def fill_asset(self, asset: str, timeframe: str) -> FillResult:
        self._check_asset(asset)
        self.policy.duration_of(timeframe)
        return await self.backfill.fill_asset(asset, timeframe)

    async def fill_all(
        self,
        assets: Optional[List[str]] = None,
        timeframes: Optional[List[str]] = None,
    ) -> List[PairResult]:
        for asset in assets or []:
            self._check_asset(asset)
        for tf in timeframes or []:
            self.policy.duration_of(tf)
        return await self.backfill.fill_all(assets, timeframes)

    def get_stats(self) -> List[SeriesStats]:
        return self.store.stats()

    def cleanup_older_than(self, retention_days: Optional[int] = None) -> int:
        """Apply the retention policy to the finest timeframe."""
        days = self.config.schedule.retention_days if retention_days is None else retention_days
        cutoff = now_ms() - days * DAY_MS
        deleted = self.store.delete_older_than(self.policy.finest, cutoff)
        logger.info(f"[RETENTION] Cleaned {deleted} old {self.policy.finest} candles")
        return deleted

    def get_latest_price(self, asset: str) -> Optional[Decimal]:
        self._check_asset(asset)
        return self.prices.get_latest_price(asset)

    def get_24h_change(self, asset: str) -> Decimal:
        self._check_asset(asset)
        return self.prices.get_24h_change(asset)

    def get_prices(self) -> List[PriceState]:
        return self.db.get_all_price_states()

    def read_candles(
        self,
        asset: str,
        timeframe: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
        limit: int = 1000,
    ) -> List[Candle]:
        self._check_asset(asset)
        self.policy.duration_of(timeframe)
        return self.store.read(asset, timeframe, start, end, limit)

    async def recompute_prices(self) -> int:
        return await self.prices.recompute_all(self.assets)

    def _check_asset(self, asset: str):
        if asset not in self.config.market.assets:
            raise UnknownAsset(asset)

    # ==================== Lifecycle ====================

    async def start(self):
        """Full startup sequence."""
        logger.info("=" * 60)
        logger.info("   CANDLE BACKFILL SERVICE - STARTING")
        logger.info("=" * 60)

        # 1. Connect database
        os.makedirs(os.path.dirname(self.config.storage.db_path) or ".", exist_ok=True)
        self.db.connect()

        # 2. Drop rows stamped in the future
        self.store.delete_future(now_ms())

        # 3. Initial backfill across every series
        logger.info("[BOOT] Starting initial data fetch...")
        self._boot_task = asyncio.create_task(self.fill_all(), name="initial-backfill")
        try:
            results = await self._boot_task
        except asyncio.CancelledError:
            if not self._closing:
                raise
            logger.info("[BOOT] Initial data fetch interrupted by shutdown")
            return
        finally:
            self._boot_task = None
        if self._closing:
            return
        filled = sum(r.candles_filled for r in results)
        logger.info(f"[BOOT] Initial data fetch completed: {filled} candles over {len(results)} series")
        await self.notifier.send_backfill_report(results)

        # 4. 24h changes from whatever prices are already stored
        await self.recompute_prices()

        if self._closing:
            return

        # 5. Live stream + schedules
        self._stream_task = asyncio.create_task(self.ingestor.connect(), name="kline-stream")
        self.scheduler.start()
        await self.notifier.send_service_status(
            f"Started ✅\nAssets: {', '.join(self.assets)}\n"
            f"Timeframes: {', '.join(self.policy.timeframes)}"
        )
        logger.info("[BOOT] ✅ All systems go. Running...")

        await self._stream_task
        await self._closed.wait()

    async def stop(self):
        """Graceful shutdown."""
        if self._closing:
            return
        self._closing = True
        logger.info("[SHUTDOWN] Stopping service...")

        # The initial pass must finish unwinding before the DB and sessions close
        if self._boot_task is not None:
            self._boot_task.cancel()
            await asyncio.gather(self._boot_task, return_exceptions=True)
        await self.scheduler.stop()
        await self.ingestor.disconnect()
        if self._stream_task is not None:
            await asyncio.gather(self._stream_task, return_exceptions=True)
        await self.client.close()
        await self.notifier.send_service_status("Stopped 🔴")
        await self.notifier.close()
        self.db.close()
        self._closed.set()

        logger.info("[SHUTDOWN] Complete.")

    async def _scheduled_backfill(self) -> List[PairResult]:
        results = await self.fill_all()
        await self.notifier.send_backfill_report(results)
        return results

    async def _scheduled_cleanup(self) -> int:
        return self.cleanup_older_than()


async def main():
    """Entry point."""
    load_dotenv()
    config = ServiceConfig.from_env()
    setup_logging(config.log_level, os.path.dirname(config.storage.db_path) or "data")

    try:
        service = MarketDataService(config)
    except ConfigurationError as e:
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    # Graceful shutdown handler
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}. Initiating shutdown...")
            asyncio.create_task(service.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        await service.start()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received in main loop.")
        await service.stop()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await service.stop()
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
