"""
Error taxonomy for the candle service.

Configuration errors are caller bugs and propagate. Upstream and malformed
payload errors are recorded per gap by the backfill coordinator. Persistence
errors always propagate to the immediate caller. Stream errors trigger a
reconnect and never surface.
"""


class MarketDataError(Exception):
    """Base class for all service errors."""


class ConfigurationError(MarketDataError):
    """Unknown asset/timeframe or an invalid setting."""


class UnknownTimeframe(ConfigurationError):
    def __init__(self, timeframe: str):
        super().__init__(f"Unknown timeframe: {timeframe}")
        self.timeframe = timeframe


class UnknownAsset(ConfigurationError):
    def __init__(self, asset: str):
        super().__init__(f"Unknown asset: {asset}")
        self.asset = asset


class UpstreamError(MarketDataError):
    """Non-success HTTP status from the historical API."""

    def __init__(self, status: int, body: str):
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


class MalformedResponse(MarketDataError):
    """Payload could not be parsed into well-formed OHLCV rows."""


class PersistenceError(MarketDataError):
    """Store read/write failure."""


class StreamError(MarketDataError):
    """Push stream connection dropped or failed to open."""
