"""Data models for the trend-trader system."""

from .types import (
    Phase,
    OrderSide,
    Trigger,
    Order,
    BookLevel,
    OrderBook,
    BestBidAsk,
    ReferenceAverage,
    PriceSnapshot,
    TradingCycle,
    truncate_price,
    truncate_size,
)

__all__ = [
    "Phase",
    "OrderSide",
    "Trigger",
    "Order",
    "BookLevel",
    "OrderBook",
    "BestBidAsk",
    "ReferenceAverage",
    "PriceSnapshot",
    "TradingCycle",
    "truncate_price",
    "truncate_size",
]
