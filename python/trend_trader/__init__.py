"""
Trend Trader - single-pair trend-following limit order agent

Compares a streamed reference average against the live order book,
accumulates a directional signal strength and drives a six-phase order
lifecycle on Coinbase Exchange:

- Waiting -> Entering: limit buy at the best bid after sustained strength
- Entering -> Entered: take-profit limit sell once the buy settles
- Exit: forced limit sell at the ask on reversal or stop-loss
"""

__version__ = "0.1.0"
__author__ = "trend-trader"

from .config import Config, load_config
from .models.types import (
    Phase,
    OrderSide,
    Trigger,
    Order,
    OrderBook,
    BookLevel,
    BestBidAsk,
    ReferenceAverage,
    PriceSnapshot,
    TradingCycle,
)
from .orchestrator import Orchestrator, TradingMode
from .services import (
    CoinbaseGateway,
    PaperGateway,
    GatewayError,
    ReferenceFeed,
    MockFeed,
    PriceTracker,
    SignalAccumulator,
    TradingStateMachine,
)

__all__ = [
    # Config
    "Config",
    "load_config",
    # Types
    "Phase",
    "OrderSide",
    "Trigger",
    "Order",
    "OrderBook",
    "BookLevel",
    "BestBidAsk",
    "ReferenceAverage",
    "PriceSnapshot",
    "TradingCycle",
    # Orchestrator
    "Orchestrator",
    "TradingMode",
    # Services
    "CoinbaseGateway",
    "PaperGateway",
    "GatewayError",
    "ReferenceFeed",
    "MockFeed",
    "PriceTracker",
    "SignalAccumulator",
    "TradingStateMachine",
]
