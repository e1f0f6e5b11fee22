from decimal import Decimal

import pytest

from config import BackfillConfig, MarketConfig
from core.intervals import IntervalPolicy
from exchange.models import Candle
from storage.candle_store import CandleStore
from storage.database import Database

MINUTE = 60_000
HOUR = 3_600_000
# Hour-aligned base time (2023-11-14 22:00 UTC)
T0 = 472_222 * HOUR


@pytest.fixture
def db(tmp_path):
    """Connected SQLite database in a temp directory."""
    database = Database(str(tmp_path / "candles.db"))
    database.connect()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return CandleStore(db)


@pytest.fixture
def market():
    return MarketConfig()


@pytest.fixture
def policy(market):
    return IntervalPolicy(market.timeframes)


@pytest.fixture
def backfill_config():
    return BackfillConfig(max_page_size=1000, pacing_sec=0.1)


@pytest.fixture
def make_candle():
    """Factory for well-formed candles; close_time defaults to the bar's last ms."""

    def _make(
        open_time,
        close_time=None,
        open="100",
        high="110",
        low="90",
        close="105",
        volume="10",
        trades=5,
        duration=HOUR,
    ):
        return Candle(
            open_time=open_time,
            open=Decimal(open),
            high=Decimal(high),
            low=Decimal(low),
            close=Decimal(close),
            volume=Decimal(volume),
            close_time=close_time if close_time is not None else open_time + duration - 1,
            quote_volume=Decimal(volume) * Decimal(close),
            trade_count=trades,
            taker_buy_base_volume=Decimal("1"),
            taker_buy_quote_volume=Decimal("100"),
        )

    return _make
