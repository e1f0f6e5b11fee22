"""
Data models for the candle service.
Uses Decimal for all price/volume values, avoiding floating point errors.
Times are Unix milliseconds.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional


@dataclass
class Candle:
    """OHLCV candle plus Binance trade metadata."""
    open_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: int
    quote_volume: Decimal = Decimal("0")
    trade_count: int = 0
    taker_buy_base_volume: Decimal = Decimal("0")
    taker_buy_quote_volume: Decimal = Decimal("0")

    def check(self):
        """Raise ValueError if the candle breaks an OHLCV invariant."""
        for name in ("open", "high", "low", "close", "volume", "quote_volume",
                     "taker_buy_base_volume", "taker_buy_quote_volume"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} is negative")
        if self.trade_count < 0:
            raise ValueError("trade_count is negative")
        if self.close_time <= self.open_time:
            raise ValueError(f"close_time {self.close_time} <= open_time {self.open_time}")
        if self.high < max(self.open, self.close):
            raise ValueError(f"high {self.high} below open/close")
        if self.low > min(self.open, self.close):
            raise ValueError(f"low {self.low} above open/close")


@dataclass
class Gap:
    """A missing time range for one series. Never persisted."""
    start: int
    end: int
    missing_intervals: int


@dataclass
class PriceState:
    """Latest price and trailing 24h change for one asset."""
    asset: str
    price: Decimal
    change_24h: Decimal
    updated_at: int


@dataclass
class FillResult:
    candles_filled: int = 0
    errors: List[str] = field(default_factory=list)

    def __add__(self, other: "FillResult") -> "FillResult":
        return FillResult(
            candles_filled=self.candles_filled + other.candles_filled,
            errors=self.errors + other.errors,
        )


@dataclass
class PairResult:
    """Outcome of one (asset, timeframe) pair inside a fill-all pass."""
    asset: str
    timeframe: str
    candles_filled: int = 0
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None     # Set when the whole pair failed

    @property
    def complete(self) -> bool:
        return self.error is None and not self.errors


@dataclass
class SeriesStats:
    asset: str
    timeframe: str
    count: int
    oldest: int
    newest: int
