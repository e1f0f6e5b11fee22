"""
Binance WebSocket Manager.
One combined kline stream covering every configured symbol/interval.
Auto-reconnects on disconnect until stopped.
"""

from __future__ import annotations
import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple
import websockets
import logging

from exchange.errors import StreamError

logger = logging.getLogger(__name__)

# Async callback: receives the raw text frame
MessageHandler = Callable[[str], Awaitable[None]]


class StreamState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    STOPPED = "STOPPED"


def combined_stream_url(base_url: str, streams: Iterable[Tuple[str, str]]) -> str:
    """``{base}/stream?streams=btcusdt@kline_5m/ethusdt@kline_5m``"""
    names = [f"{symbol.lower()}@kline_{interval}" for symbol, interval in streams]
    return f"{base_url.rstrip('/')}/stream?streams={'/'.join(names)}"


class BinanceKlineStream:
    """
    Connection state machine:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> ... -> STOPPED

    Reconnects after ``reconnect_delay`` with no retry cap. ``stop()`` is
    the cancellation token: it ends the loop from any state, including
    the reconnect wait.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        reconnect_delay: float = 5.0,
        ping_interval: int = 20,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.url = url
        self.on_message = on_message
        self.reconnect_delay = reconnect_delay
        self._ping_interval = ping_interval
        self._connect = connect or websockets.connect

        self._state = StreamState.DISCONNECTED
        self._stop_event = asyncio.Event()
        self._ws = None
        self.connect_attempts = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _set_state(self, state: StreamState):
        if state != self._state:
            logger.debug(f"[WS] {self._state.value} -> {state.value}")
        self._state = state

    async def run(self):
        """Connect and pump frames until ``stop()`` is called."""
        while not self.stopped:
            self._set_state(StreamState.CONNECTING)
            self.connect_attempts += 1
            try:
                async with self._connect(
                    self.url,
                    ping_interval=self._ping_interval,
                    ping_timeout=10,
                    close_timeout=5,
                ) as ws:
                    self._ws = ws
                    if self.stopped:
                        break
                    self._set_state(StreamState.CONNECTED)
                    logger.info(f"[WS] Connected to {self.url}")

                    async for raw in ws:
                        await self.on_message(raw)

                if not self.stopped:
                    raise StreamError("Stream closed by remote")
            except StreamError as e:
                logger.warning(f"[WS] {e}")
            except websockets.ConnectionClosed as e:
                logger.warning(f"[WS] Connection closed: {e}")
            except Exception as e:
                logger.error(f"[WS] Error: {e}")
            finally:
                self._ws = None

            if self.stopped:
                break
            self._set_state(StreamState.DISCONNECTED)
            logger.info(f"[WS] Reconnecting in {self.reconnect_delay}s...")
            await self._wait_reconnect()

        self._set_state(StreamState.STOPPED)
        logger.info("[WS] Stopped")

    async def _wait_reconnect(self):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay)
        except asyncio.TimeoutError:
            pass

    async def stop(self):
        """Terminal; idempotent and safe from any state."""
        if self.stopped:
            return
        self._stop_event.set()
        self._set_state(StreamState.STOPPED)
        if self._ws is not None:
            await self._ws.close()
