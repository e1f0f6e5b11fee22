"""
Tests for Telegram backfill reports.
"""

from unittest.mock import AsyncMock

import pytest

from exchange.models import PairResult
from notifications.telegram import TelegramNotifier


@pytest.fixture
def notifier():
    n = TelegramNotifier(bot_token="token", chat_id="chat")
    n.send = AsyncMock()
    return n


class TestBackfillReport:

    @pytest.mark.asyncio
    async def test_silent_when_all_complete(self, notifier):
        await notifier.send_backfill_report([
            PairResult("BTC", "1h", candles_filled=10),
            PairResult("ETH", "5m"),
        ])
        notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lists_incomplete_series(self, notifier):
        await notifier.send_backfill_report([
            PairResult("BTC", "1h", candles_filled=10),
            PairResult("ETH", "5m", candles_filled=3, errors=["UpstreamError: HTTP 429"]),
            PairResult("SOL", "1d", error="locked"),
        ])

        notifier.send.assert_awaited_once()
        msg = notifier.send.await_args.args[0]
        assert "2/3 series" in msg
        assert "ETH 5m" in msg and "HTTP 429" in msg
        assert "SOL 1d" in msg and "locked" in msg
        assert "BTC 1h" not in msg

    @pytest.mark.asyncio
    async def test_upstream_html_is_escaped(self, notifier):
        await notifier.send_backfill_report([
            PairResult("BTC", "1h", errors=["UpstreamError: HTTP 502: <html><body>Bad Gateway</body></html>"]),
            PairResult("ETH", "5m", error="a < b & c"),
        ])

        msg = notifier.send.await_args.args[0]
        assert "<html>" not in msg
        assert "<body>" not in msg
        assert "&lt;html&gt;&lt;body&gt;Bad Gateway" in msg
        assert "a &lt; b &amp; c" in msg
        assert "<code>BTC 1h</code>" in msg


class TestDisabled:

    def test_missing_credentials_disable(self):
        assert TelegramNotifier("", "chat").enabled is False
        assert TelegramNotifier("token", "").enabled is False
        assert TelegramNotifier("token", "chat", enabled=False).enabled is False

    @pytest.mark.asyncio
    async def test_disabled_send_opens_no_session(self):
        notifier = TelegramNotifier("", "")
        await notifier.send("hello")
        assert notifier._session is None
