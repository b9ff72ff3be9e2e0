"""Services for the trend-trader system."""

from .gateway import CoinbaseGateway, PaperGateway, GatewayError
from .feed import ReferenceFeed, MockFeed, FeedDecodeError
from .price_tracker import PriceTracker
from .retry import RetryPolicy, RetryExhaustedError
from .signal_engine import SignalAccumulator
from .state_machine import TradingStateMachine, BalanceUnavailableError

__all__ = [
    "CoinbaseGateway",
    "PaperGateway",
    "GatewayError",
    "ReferenceFeed",
    "MockFeed",
    "FeedDecodeError",
    "PriceTracker",
    "RetryPolicy",
    "RetryExhaustedError",
    "SignalAccumulator",
    "TradingStateMachine",
    "BalanceUnavailableError",
]
