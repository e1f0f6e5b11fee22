"""
Price Tracker: latest price and trailing 24h change per asset.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Iterable, Optional, TYPE_CHECKING
import logging

from core.intervals import DAY_MS, Clock, now_ms
from exchange.models import PriceState

if TYPE_CHECKING:
    from storage.candle_store import CandleStore
    from storage.database import Database

logger = logging.getLogger(__name__)


class PriceTracker:
    """
    Owns the current_prices relation. Every write replaces the whole
    PriceState for an asset.

    The 24h reference is the first candle of ``reference_timeframe`` opened
    at or after now - 24h. A missing reference or a zero close gives 0%.
    """

    def __init__(
        self,
        db: "Database",
        store: "CandleStore",
        reference_timeframe: str,
        clock: Clock = now_ms,
    ):
        self.db = db
        self.store = store
        self.reference_timeframe = reference_timeframe
        self.clock = clock

    def _change_24h(self, asset: str, price: Decimal, now: int) -> Decimal:
        ref = self.store.first_since(asset, self.reference_timeframe, now - DAY_MS)
        if ref is None or ref.close <= 0:
            return Decimal("0")
        return (price - ref.close) / ref.close * 100

    async def on_new_price(self, asset: str, price: Decimal) -> PriceState:
        now = self.clock()
        state = PriceState(
            asset=asset,
            price=price,
            change_24h=self._change_24h(asset, price, now),
            updated_at=now,
        )
        self.db.save_price_state(state)
        return state

    async def recompute_all(self, assets: Iterable[str]) -> int:
        """Refresh the 24h change from each asset's stored price."""
        updated = 0
        for asset in assets:
            current = self.db.get_price_state(asset)
            if current is None:
                continue
            state = await self.on_new_price(asset, current.price)
            logger.info(f"[PRICE] Updated 24h change for {asset}: {state.change_24h:.2f}%")
            updated += 1
        return updated

    def get_price_state(self, asset: str) -> Optional[PriceState]:
        return self.db.get_price_state(asset)

    def get_latest_price(self, asset: str) -> Optional[Decimal]:
        state = self.db.get_price_state(asset)
        return state.price if state else None

    def get_24h_change(self, asset: str) -> Decimal:
        state = self.db.get_price_state(asset)
        return state.change_24h if state else Decimal("0")
