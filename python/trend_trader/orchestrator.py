"""Main orchestrator for the trend-trader system.

Coordinates:
- State machine task (supervised, restarted after reconciliation)
- Trade price refresh
- Signal evaluation
- Reference feed throttling
- Diagnostic logging
"""

import asyncio
import inspect
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional, Callable, List

from .config import Config
from .models.types import Order, ReferenceAverage
from .services.feed import ReferenceFeed, MockFeed
from .services.gateway import CoinbaseGateway, PaperGateway, GatewayError
from .services.price_tracker import PriceTracker
from .services.retry import RetryExhaustedError
from .services.signal_engine import SignalAccumulator
from .services.state_machine import TradingStateMachine, BalanceUnavailableError
from .storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)


class TradingMode:
    """Trading mode constants."""
    PAPER = "paper"
    LIVE = "live"
    MOCK = "mock"


@dataclass
class OrchestratorState:
    """Current state of the orchestrator."""
    is_running: bool = False
    records_accepted: int = 0
    triggers_fired: int = 0
    orders_settled: int = 0
    machine_restarts: int = 0


class Orchestrator:
    """Main trading system orchestrator.

    Modes:
    - paper: Simulated fills against live public market data
    - live: Real orders with real money
    - mock: Simulated fills against a static book, no network
    """

    def __init__(
        self,
        config: Config,
        mode: str = TradingMode.PAPER,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        use_sandbox: bool = True,
    ):
        self.config = config
        self.mode = mode

        if mode == TradingMode.LIVE:
            if not api_key or not api_secret or not passphrase:
                raise ValueError("API credentials required for live trading")
            self.gateway = CoinbaseGateway(
                config, api_key, api_secret, passphrase, use_sandbox=use_sandbox
            )
            self.feed = ReferenceFeed(config)
        elif mode == TradingMode.PAPER:
            market = CoinbaseGateway(config, "", "", "", use_sandbox=use_sandbox)
            self.gateway = PaperGateway(config, market=market)
            self.feed = ReferenceFeed(config)
        else:  # mock
            self.gateway = PaperGateway(config)
            self.feed = MockFeed(config)

        # Core components
        self.tracker = PriceTracker(config, self.gateway)
        self.machine = TradingStateMachine(config, self.gateway)
        self.signal_engine = SignalAccumulator(config, self.tracker, self.machine)
        self.store = ExecutionStore(config.database)

        self.feed.on_record = self._on_record
        self.machine.on_settled = self._on_settled

        self.state = OrchestratorState()
        self._tasks: List[asyncio.Task] = []
        self._stopped = False

    async def start(self) -> None:
        """Start all tasks and block until one of them ends.

        Raises:
            FeedDecodeError: a reference record could not be decoded
            RetryExhaustedError, BalanceUnavailableError: the machine failed
                more often than retry.max_restarts allows
        """
        logger.info(f"Starting orchestrator in {self.mode} mode")

        await self.gateway.start()
        self.store.connect()
        self.state.is_running = True
        self._stopped = False

        await self.tracker.refresh_trade_price()

        schedule = self.config.schedule
        self._tasks = [
            asyncio.create_task(self._supervise_machine(), name="machine"),
            asyncio.create_task(self.feed.run(), name="feed"),
            asyncio.create_task(
                self._every(schedule.price_refresh_seconds, self.tracker.refresh_trade_price),
                name="price-refresh",
            ),
            asyncio.create_task(
                self._every(self.config.signal.tick_seconds, self._evaluate_signal),
                name="signal",
            ),
            asyncio.create_task(
                self._every(schedule.feed_throttle_seconds, self.feed.open_gate),
                name="feed-throttle",
            ),
            asyncio.create_task(
                self._every(schedule.status_log_seconds, self._log_status),
                name="status-log",
            ),
            asyncio.create_task(
                self._every(schedule.orders_log_seconds, self._log_orders),
                name="orders-log",
            ),
        ]

        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.critical(f"Task {task.get_name()} failed: {task.exception()}")
                    raise task.exception()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the orchestrator."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping orchestrator")
        self.state.is_running = False

        self.machine.stop()
        await self.feed.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.gateway.stop()
        self.store.close()

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def _every(self, interval: float, fn: Callable) -> None:
        """Call fn every interval seconds; a failing tick is logged and skipped."""
        while self.state.is_running:
            await asyncio.sleep(interval)
            try:
                result = fn()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{getattr(fn, '__name__', fn)} failed: {e}")

    async def _supervise_machine(self) -> None:
        """Run the machine, reconciling and restarting it after fatal errors."""
        resume_holding = False
        while self.state.is_running:
            try:
                await self.machine.run(resume_holding=resume_holding)
                return
            except (RetryExhaustedError, BalanceUnavailableError) as e:
                self.state.machine_restarts += 1
                logger.critical(f"State machine halted: {e}")
                if self.state.machine_restarts > self.config.retry.max_restarts:
                    raise
                resume_holding = await self.reconcile()

    async def reconcile(self) -> bool:
        """Bring in-memory state in line with the exchange.

        Cancels every open order and checks for an unsold base balance.

        Returns:
            True if the machine should resume holding (in Exit)
        """
        product = self.config.product
        self.machine.retry.reset()
        try:
            cancelled = await self.gateway.cancel_all_orders(product.product_id)
            base_balance = await self.gateway.available_balance(product.base_currency)
        except GatewayError as e:
            logger.error(f"Reconciliation failed: {e}")
            return False

        holding = base_balance >= product.min_base_size
        logger.warning(
            f"Reconciled: cancelled {len(cancelled)} open orders, "
            f"{product.base_currency} balance {base_balance}, "
            f"resuming in {'Exit' if holding else 'Waiting'}"
        )
        return holding

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def _evaluate_signal(self) -> None:
        if self.signal_engine.evaluate() is not None:
            self.state.triggers_fired += 1

    async def _on_record(self, record: ReferenceAverage) -> None:
        self.tracker.accept_reference_average(record)
        self.state.records_accepted += 1

    async def _on_settled(self, order: Order) -> None:
        self.state.orders_settled += 1
        try:
            self.store.save_order(order, self.machine.cycles_started)
        except sqlite3.Error as e:
            logger.error(f"Failed to journal order {order.id}: {e}")

    def _log_status(self) -> None:
        snapshot = self.tracker.current()
        average = snapshot.reference_average.price if snapshot.reference_average else 0.0
        price = snapshot.last_trade_price or 0.0
        logger.info(
            f"Book Price Avg: {average:f}, Last Trade Price: {price:f}, "
            f"- {self.machine.phase} ( {self.signal_engine.signal_strength} )"
        )

    def _log_orders(self) -> None:
        for order in self.machine.cycle.settled_orders:
            logger.info(f"Settled - {order}")

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_status(self) -> dict:
        """Current diagnostic status."""
        snapshot = self.tracker.current()
        cycle = self.machine.cycle
        return {
            "reference_average": (
                snapshot.reference_average.price if snapshot.reference_average else None
            ),
            "last_trade_price": snapshot.last_trade_price,
            "phase": str(cycle.phase),
            "signal_strength": self.signal_engine.signal_strength,
            "holding": cycle.holding,
            "opened_order": cycle.opened_order.to_dict() if cycle.opened_order else None,
            "settled_orders": [o.to_dict() for o in cycle.settled_orders],
        }

    def get_stats(self) -> dict:
        """Get orchestrator statistics."""
        return {
            "mode": self.mode,
            "is_running": self.state.is_running,
            "cycles_started": self.machine.cycles_started,
            "records_accepted": self.state.records_accepted,
            "triggers_fired": self.state.triggers_fired,
            "orders_settled": self.state.orders_settled,
            "machine_restarts": self.state.machine_restarts,
            "feed_stats": self.feed.get_stats_dict(),
        }
