"""
WebSocket Stream Module

Responsibilities:
- Hold one combined kline subscription (kline_<tf> per configured asset)
- Parse each event into a Candle, write it through CandleStore.upsert
- Pass the latest close to the price hook
- Drop events for symbols or intervals that are not configured
"""

from __future__ import annotations
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING
import logging

from exchange.binance_ws import BinanceKlineStream, StreamState, combined_stream_url
from exchange.errors import MalformedResponse
from exchange.models import Candle

if TYPE_CHECKING:
    from config import MarketConfig, StreamConfig
    from storage.candle_store import CandleStore

logger = logging.getLogger(__name__)

PriceHook = Callable[[str, Decimal], Awaitable[None]]


def parse_stream_kline(k: Dict[str, Any]) -> Candle:
    """Parse the ``k`` object of a kline event."""
    try:
        candle = Candle(
            open_time=int(k["t"]),
            open=Decimal(str(k["o"])),
            high=Decimal(str(k["h"])),
            low=Decimal(str(k["l"])),
            close=Decimal(str(k["c"])),
            volume=Decimal(str(k["v"])),
            close_time=int(k["T"]),
            quote_volume=Decimal(str(k["q"])),
            trade_count=int(k["n"]),
            taker_buy_base_volume=Decimal(str(k["V"])),
            taker_buy_quote_volume=Decimal(str(k["Q"])),
        )
        candle.check()
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise MalformedResponse(f"Bad kline event: {e}") from e
    return candle


class StreamIngestor:
    """Live kline ingestion for the stream timeframes of every asset."""

    def __init__(
        self,
        market: "MarketConfig",
        config: "StreamConfig",
        ws_base_url: str,
        store: "CandleStore",
        price_hook: Optional[PriceHook] = None,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.market = market
        self.store = store
        self.price_hook = price_hook
        self.events_written = 0
        self.events_dropped = 0

        streams = [
            (symbol, tf)
            for symbol in market.assets.values()
            for tf in market.stream_timeframes
        ]
        self.stream = BinanceKlineStream(
            url=combined_stream_url(ws_base_url, streams),
            on_message=self.handle_message,
            reconnect_delay=config.reconnect_delay_sec,
            ping_interval=config.ping_interval,
            connect=connect,
        )

    @property
    def state(self) -> StreamState:
        return self.stream.state

    async def connect(self):
        """Run the subscription until disconnect() is called."""
        logger.info(f"[STREAM] Subscribing: {self.stream.url}")
        await self.stream.run()

    async def disconnect(self):
        await self.stream.stop()

    async def handle_message(self, raw: str):
        """Process one frame. Never raises; failures are logged and dropped."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[STREAM] Invalid JSON: {raw[:100]}")
            self.events_dropped += 1
            return

        # Combined streams wrap the event: {"stream": ..., "data": {...}}
        event = data.get("data", data) if isinstance(data, dict) else None
        if not isinstance(event, dict) or event.get("e") != "kline" or "k" not in event:
            return

        symbol = str(event.get("s", ""))
        asset = self.market.asset_for_symbol(symbol)
        if asset is None:
            logger.debug(f"[STREAM] Dropping event for unconfigured symbol {symbol}")
            self.events_dropped += 1
            return

        k = event["k"]
        timeframe = k.get("i") if isinstance(k, dict) else None
        if timeframe not in self.market.timeframes:
            logger.debug(f"[STREAM] Dropping {symbol} event with interval {timeframe}")
            self.events_dropped += 1
            return

        try:
            candle = parse_stream_kline(k)
        except MalformedResponse as e:
            logger.warning(f"[STREAM] {asset} {timeframe}: {e}")
            self.events_dropped += 1
            return

        try:
            self.store.upsert(asset, timeframe, candle)
            self.events_written += 1
            if self.price_hook is not None:
                await self.price_hook(asset, candle.close)
        except Exception as e:
            logger.error(f"[STREAM] {asset} {timeframe} write failed: {e}", exc_info=True)
