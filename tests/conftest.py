"""Pytest configuration and fixtures."""

import asyncio
import sys
from pathlib import Path

import pytest

# Add the python package to the path
PACKAGE_DIR = Path(__file__).parent.parent / "python"
sys.path.insert(0, str(PACKAGE_DIR))

from trend_trader.config import Config
from trend_trader.models.types import (
    Order,
    OrderSide,
    OrderBook,
    BookLevel,
    ReferenceAverage,
)
from trend_trader.services.gateway import PaperGateway
from trend_trader.services.price_tracker import PriceTracker
from trend_trader.services.state_machine import TradingStateMachine


@pytest.fixture
def sample_config(tmp_path) -> Config:
    """Configuration with no waiting between polls or retries."""
    config = Config()
    config.orders.poll_interval_seconds = 0.0
    config.retry.base_delay_seconds = 0.0
    config.retry.max_delay_seconds = 0.0
    config.retry.max_attempts = 3
    config.gateway.paper_quote_balance = 1000.0
    config.schedule.price_refresh_seconds = 0.01
    config.schedule.feed_throttle_seconds = 0.01
    config.schedule.status_log_seconds = 0.01
    config.schedule.orders_log_seconds = 0.01
    config.signal.tick_seconds = 0.01
    config.database.data_dir = str(tmp_path / "data")
    return config


@pytest.fixture
def paper_gateway(sample_config) -> PaperGateway:
    """Paper gateway with a book that does not cross a bid-priced buy."""
    gateway = PaperGateway(sample_config)
    gateway.set_book(bids=[(100.0, 1.0)], asks=[(100.5, 1.0)])
    return gateway


@pytest.fixture
def tracker(sample_config, paper_gateway) -> PriceTracker:
    return PriceTracker(sample_config, paper_gateway)


@pytest.fixture
def machine(sample_config, paper_gateway) -> TradingStateMachine:
    return TradingStateMachine(sample_config, paper_gateway)


@pytest.fixture
def sample_book() -> OrderBook:
    return OrderBook(
        product_id="BTC-USD",
        bids=[BookLevel(price=6412.20, size=1.5)],
        asks=[BookLevel(price=6412.21, size=0.4)],
    )


@pytest.fixture
def sample_order() -> Order:
    return Order(
        id="d0c5340b-6d6c-49d9-b567-48c4bfca13d2",
        product_id="BTC-USD",
        side=OrderSide.BUY,
        price=100.0,
        size=0.5,
        settled=True,
        status="done",
        done_reason="filled",
        filled_size=0.5,
    )


@pytest.fixture
def sample_record() -> ReferenceAverage:
    return ReferenceAverage(product_id="BTC-USD", price=6400.0)


@pytest.fixture
def wait_until():
    """Return a coroutine that yields to the loop until predicate() is true."""

    async def _wait_until(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(0)

    return _wait_until
