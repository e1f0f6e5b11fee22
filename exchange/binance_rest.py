"""
Binance REST API Client.
Public market-data endpoints only: klines and server time.
"""

from __future__ import annotations
import json
from typing import Any, Dict, List, Optional
import aiohttp
import logging

from exchange.errors import MalformedResponse, UpstreamError

logger = logging.getLogger(__name__)

MAX_KLINE_LIMIT = 1000


class BinanceRestClient:
    """Async Binance spot REST wrapper."""

    def __init__(self, base_url: str, timeout_sec: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """GET an endpoint and decode its JSON body."""
        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"

        async with session.get(url, params=params) as resp:
            body = await resp.text()
            if resp.status != 200:
                logger.error(f"[REST] GET {endpoint} HTTP {resp.status}: {body[:200]}")
                raise UpstreamError(resp.status, body)

        try:
            return json.loads(body)
        except ValueError as e:
            raise MalformedResponse(f"GET {endpoint}: invalid JSON: {body[:100]}") from e

    # ==================== Market Endpoints ====================

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[List[Any]]:
        """
        Get historical kline rows, oldest first.
        Row format: [openTime, open, high, low, close, volume, closeTime,
        quoteVolume, trades, takerBuyBase, takerBuyQuote, ignore]
        """
        params = {
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": str(min(limit, MAX_KLINE_LIMIT)),
        }
        if start_time is not None:
            params["startTime"] = str(start_time)
        if end_time is not None:
            params["endTime"] = str(end_time)

        data = await self._get("/api/v3/klines", params)
        if not isinstance(data, list):
            raise MalformedResponse(f"klines: expected a list, got {type(data).__name__}")
        return data

    async def get_server_time(self) -> int:
        """Upstream server time in Unix ms."""
        data = await self._get("/api/v3/time")
        try:
            return int(data["serverTime"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponse(f"time: unexpected payload {data!r}") from e
