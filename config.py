"""
Candle Backfill Service: Configuration
All tunable parameters in one place.
"""

import math
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from exchange.errors import ConfigurationError

DAY_MS = 24 * 60 * 60 * 1000


def _default_assets() -> Dict[str, str]:
    return {
        "BTC": "btcusdt",
        "ETH": "ethusdt",
        "SOL": "solusdt",
        "ADA": "adausdt",
    }


def _default_timeframes() -> Dict[str, Tuple[int, int]]:
    # timeframe -> (duration ms, bootstrap lookback ms)
    return {
        "5m": (5 * 60 * 1000, 1 * DAY_MS),
        "1h": (60 * 60 * 1000, 7 * DAY_MS),
        "1d": (DAY_MS, 90 * DAY_MS),
    }


@dataclass
class MarketConfig:
    assets: Dict[str, str] = field(default_factory=_default_assets)
    timeframes: Dict[str, Tuple[int, int]] = field(default_factory=_default_timeframes)
    stream_timeframes: List[str] = field(default_factory=lambda: ["5m"])

    def symbol_for(self, asset: str) -> Optional[str]:
        return self.assets.get(asset)

    def asset_for_symbol(self, symbol: str) -> Optional[str]:
        """Reverse lookup; upstream reports symbols upper-cased."""
        wanted = symbol.lower()
        for asset, sym in self.assets.items():
            if sym.lower() == wanted:
                return asset
        return None


@dataclass
class BackfillConfig:
    max_page_size: int = 1000           # Upstream hard cap per request
    pacing_sec: float = 0.1             # Pause between pages of one gap
    requests_per_minute: int = 1200     # Upstream weight limit
    max_concurrent_pairs: Optional[int] = None  # None = derive from pacing

    @property
    def concurrency(self) -> int:
        """
        Number of (asset, timeframe) pairs allowed to fill at once.
        Each running pair issues at most 1/pacing_sec requests per second;
        the total stays strictly below requests_per_minute.
        """
        if self.max_concurrent_pairs:
            return self.max_concurrent_pairs
        per_second = self.requests_per_minute / 60
        budget = round(per_second * self.pacing_sec, 6)
        return max(1, math.ceil(budget) - 1)


@dataclass
class StreamConfig:
    reconnect_delay_sec: float = 5.0
    ping_interval: int = 20             # Seconds


@dataclass
class ScheduleConfig:
    backfill_interval_sec: int = 3600       # Hourly
    price_refresh_interval_sec: int = 300   # Every 5 minutes
    retention_interval_sec: int = 86400     # Daily
    retention_days: int = 30                # For the finest timeframe only


@dataclass
class ExchangeConfig:
    rest_base_url: str = "https://api.binance.us"
    ws_base_url: str = "wss://stream.binance.us:9443"
    request_timeout_sec: float = 10.0


@dataclass
class NotificationConfig:
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    enabled: bool = True


@dataclass
class StorageConfig:
    db_path: str = "./data/candles.db"


@dataclass
class ServiceConfig:
    market: MarketConfig = field(default_factory=MarketConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.exchange.rest_base_url = os.getenv("BINANCE_REST_URL", config.exchange.rest_base_url)
        config.exchange.ws_base_url = os.getenv("BINANCE_WS_URL", config.exchange.ws_base_url)
        config.storage.db_path = os.getenv("DB_PATH", config.storage.db_path)
        config.log_level = os.getenv("LOG_LEVEL", "INFO")
        config.notifications.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
        config.notifications.telegram_chat_id = os.getenv("TELEGRAM_CHAT_ID", "")

        assets = os.getenv("ASSETS")
        if assets:
            config.market.assets = parse_assets(assets)
        if os.getenv("RETENTION_DAYS"):
            config.schedule.retention_days = int(os.environ["RETENTION_DAYS"])
        if os.getenv("BACKFILL_PAGE_SIZE"):
            config.backfill.max_page_size = int(os.environ["BACKFILL_PAGE_SIZE"])
        if os.getenv("BACKFILL_PACING_MS"):
            config.backfill.pacing_sec = int(os.environ["BACKFILL_PACING_MS"]) / 1000
        if os.getenv("RECONNECT_DELAY_SEC"):
            config.stream.reconnect_delay_sec = float(os.environ["RECONNECT_DELAY_SEC"])
        return config

    def validate(self):
        """Raise ConfigurationError on settings the service cannot run with."""
        if not self.market.assets:
            raise ConfigurationError("No assets configured")
        if not self.market.timeframes:
            raise ConfigurationError("No timeframes configured")
        for tf in self.market.stream_timeframes:
            if tf not in self.market.timeframes:
                raise ConfigurationError(f"Stream timeframe {tf!r} is not in the timeframe table")
        for tf, (duration, lookback) in self.market.timeframes.items():
            if duration <= 0 or lookback <= 0:
                raise ConfigurationError(f"Timeframe {tf!r} needs positive duration and lookback")
        if self.backfill.max_page_size <= 0:
            raise ConfigurationError("backfill.max_page_size must be positive")
        if self.backfill.pacing_sec <= 0:
            raise ConfigurationError("backfill.pacing_sec must be positive")
        if self.schedule.retention_days <= 0:
            raise ConfigurationError("schedule.retention_days must be positive")


def parse_assets(raw: str) -> Dict[str, str]:
    """Parse ``BTC:btcusdt,ETH:ethusdt`` into an asset -> symbol map."""
    assets: Dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        asset, sep, symbol = item.partition(":")
        if not sep or not asset.strip() or not symbol.strip():
            raise ConfigurationError(f"Bad ASSETS entry: {item!r}")
        assets[asset.strip().upper()] = symbol.strip().lower()
    return assets
