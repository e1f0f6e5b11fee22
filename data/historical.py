"""
Historical Data Module

Fetches bounded pages of klines from the REST API and turns them into
validated Candle objects. A single bad row rejects the whole page.
"""

from __future__ import annotations
from decimal import Decimal, InvalidOperation
from typing import Any, List, TYPE_CHECKING
import logging

from exchange.binance_rest import MAX_KLINE_LIMIT
from exchange.errors import MalformedResponse, UnknownAsset
from exchange.models import Candle

if TYPE_CHECKING:
    from config import MarketConfig
    from exchange.binance_rest import BinanceRestClient

logger = logging.getLogger(__name__)

KLINE_FIELDS = 11


def parse_rest_kline(row: Any) -> Candle:
    """
    Parse one REST kline row:
    [openTime, open, high, low, close, volume, closeTime, quoteVolume,
     trades, takerBuyBase, takerBuyQuote, ...]
    """
    if not isinstance(row, (list, tuple)) or len(row) < KLINE_FIELDS:
        raise MalformedResponse(f"Bad kline row: {row!r}")
    try:
        candle = Candle(
            open_time=int(row[0]),
            open=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])),
            close_time=int(row[6]),
            quote_volume=Decimal(str(row[7])),
            trade_count=int(row[8]),
            taker_buy_base_volume=Decimal(str(row[9])),
            taker_buy_quote_volume=Decimal(str(row[10])),
        )
        candle.check()
    except (TypeError, ValueError, InvalidOperation) as e:
        raise MalformedResponse(f"Bad kline row {row!r}: {e}") from e
    return candle


class HistoricalFetcher:
    """Paginated access to the upstream historical kline API."""

    def __init__(self, client: "BinanceRestClient", market: "MarketConfig"):
        self.client = client
        self.market = market

    async def fetch_page(
        self,
        asset: str,
        timeframe: str,
        max_count: int,
        range_start: int,
        range_end: int,
    ) -> List[Candle]:
        """
        Up to ``max_count`` candles opened within [range_start, range_end],
        ascending. An empty list means nothing more is available.
        """
        symbol = self.market.symbol_for(asset)
        if not symbol:
            raise UnknownAsset(asset)

        rows = await self.client.get_klines(
            symbol=symbol,
            interval=timeframe,
            limit=min(max_count, MAX_KLINE_LIMIT),
            start_time=range_start,
            end_time=range_end,
        )
        candles = [parse_rest_kline(row) for row in rows]
        candles.sort(key=lambda c: c.open_time)
        return candles[:max_count]

    async def server_time(self) -> int:
        return await self.client.get_server_time()
