"""Price tracking for the traded product.

Holds the latest order-book derived trade price and the latest reference
average accepted from the stream.
"""

import logging
from typing import Optional

from ..config import Config
from ..models.types import OrderBook, PriceSnapshot, ReferenceAverage
from .gateway import GatewayError

logger = logging.getLogger(__name__)


class PriceTracker:
    """Latest trade price and reference average.

    The trade price is a liquidity-weighted proxy: whichever side of the
    top of book shows the larger resting size.
    """

    def __init__(self, config: Config, gateway):
        self.config = config
        self.product_id = config.product.product_id
        self.gateway = gateway

        self.last_trade_price: Optional[float] = None
        self.reference_average: Optional[ReferenceAverage] = None
        self.refresh_failures = 0

    async def refresh_trade_price(self) -> None:
        """Refresh last_trade_price from the order book; no-op on failure."""
        try:
            book = await self.gateway.order_book(self.product_id)
        except GatewayError as e:
            self.refresh_failures += 1
            logger.warning(f"refresh_trade_price: {e}")
            return

        price = self.price_from_book(book)
        if price is not None:
            self.last_trade_price = price

    @staticmethod
    def price_from_book(book: OrderBook) -> Optional[float]:
        ask, bid = book.best_ask, book.best_bid
        if ask is None or bid is None:
            return None
        if ask.size > bid.size:
            return ask.price
        return bid.price

    def accept_reference_average(self, record: ReferenceAverage) -> None:
        """Overwrite the reference average (callers gate the rate)."""
        self.reference_average = ReferenceAverage(
            product_id=record.product_id,
            price=record.price,
        )

    def current(self) -> PriceSnapshot:
        return PriceSnapshot(
            last_trade_price=self.last_trade_price,
            reference_average=self.reference_average,
        )
