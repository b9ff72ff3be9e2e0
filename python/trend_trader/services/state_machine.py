"""Order-lifecycle state machine.

Phases:
1. Waiting  - no open orders, quote currency in account; wait for a buy signal
2. Entering - limit buy at the best bid, poll until settled
3. Entered  - settled buy; limit take-profit sell, poll until settled
4. Exit     - forced exit: cancel everything, short-lived limit sell at the ask
5. Exited   - settled sell; cancel stragglers and start a new cycle

Exiting is part of the Phase enum for reporting but no transition targets
it, so it has no handler.
"""

import asyncio
import logging
from collections import deque
from decimal import Decimal
from typing import Optional, Callable, Awaitable, Deque

from ..config import Config
from ..models.types import (
    Order,
    Phase,
    Trigger,
    TradingCycle,
    truncate_price,
    truncate_size,
)
from .gateway import GatewayError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class BalanceUnavailableError(Exception):
    """Raised when a balance needed to size an order cannot be fetched."""


Handler = Callable[[], Awaitable[Optional["Handler"]]]
SettledCallback = Callable[[Order], Awaitable[None]]


def take_profit_price(settle_price: float, pct: float, decimals: int = 2) -> float:
    """Settle price marked up by pct, truncated toward zero."""
    marked_up = Decimal(str(settle_price)) * (Decimal(1) + Decimal(str(pct)))
    return truncate_price(float(marked_up), decimals)


class TradingStateMachine:
    """Single owner of the trading cycle.

    Handlers run strictly one at a time and return the next handler. Other
    tasks never assign cycle fields; they call offer_buy_signal(),
    request_cancel() or request_exit(), which the machine observes at its
    suspension points (the buy-signal wait and the order polling loops).
    """

    def __init__(self, config: Config, gateway):
        self.config = config
        self.product = config.product
        self.orders_config = config.orders
        self.gateway = gateway

        self.retry = RetryPolicy(config.retry)
        self.cycle = TradingCycle()
        self.cycles_started = 0
        self.recent_phases: Deque[Phase] = deque(maxlen=100)

        self.on_settled: Optional[SettledCallback] = None

        self._running = False

    @property
    def phase(self) -> Phase:
        return self.cycle.phase

    @property
    def holding(self) -> bool:
        return self.cycle.holding

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Requests from other tasks
    # -------------------------------------------------------------------------

    def offer_buy_signal(self) -> bool:
        """Hand a buy signal to the machine if it is waiting for one.

        Returns True only when the signal was delivered; a signal offered
        while nobody waits is dropped rather than buffered.
        """
        signal = self.cycle.buy_signal
        if self.cycle.phase != Phase.WAITING or signal is None or signal.done():
            return False
        signal.set_result(Trigger.BUY_SIGNAL)
        return True

    def request_cancel(self) -> bool:
        """Ask the machine to cancel the open buy order."""
        if self.cycle.phase != Phase.ENTERING or self.cycle.opened_order is None:
            return False
        if self.cycle.cancel_requested:
            return False
        self.cycle.cancel_requested = True
        logger.info(f"Cancel requested for order {self.cycle.opened_order.id}")
        return True

    def request_exit(self, reason: str = "") -> bool:
        """Force the cycle into Exit at the next suspension point."""
        if self.cycle.phase in (Phase.EXIT, Phase.EXITED) or self.cycle.exit_requested:
            return False
        self.cycle.exit_requested = True
        logger.warning(f"Exit requested in {self.cycle.phase}: {reason}")

        signal = self.cycle.buy_signal
        if self.cycle.phase == Phase.WAITING and signal is not None and not signal.done():
            signal.set_result(Trigger.FORCED_EXIT)
        return True

    # -------------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------------

    async def run(self, resume_holding: bool = False) -> None:
        """Drive handlers until stopped.

        Args:
            resume_holding: start in Exit holding the base balance, used
                after reconciliation found an unsold position.

        Raises:
            RetryExhaustedError: a retried intent hit the retry ceiling
            BalanceUnavailableError: sizing balance could not be fetched
        """
        self._running = True
        handler: Optional[Handler] = self._waiting
        if resume_holding:
            self._new_cycle(phase=Phase.EXIT, holding=True)
            handler = self._exit

        try:
            while handler is not None and self._running:
                handler = await handler()
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
        signal = self.cycle.buy_signal
        if signal is not None and not signal.done():
            signal.cancel()

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _waiting(self) -> Optional[Handler]:
        logger.info("WAITING...")
        self._new_cycle(phase=Phase.WAITING)
        self.cycle.buy_signal = asyncio.get_running_loop().create_future()

        try:
            trigger = await self.cycle.buy_signal
        except asyncio.CancelledError:
            if not self._running:
                return None
            raise

        if trigger == Trigger.FORCED_EXIT:
            return self._exit
        return self._entering

    async def _entering(self) -> Optional[Handler]:
        logger.info("ENTERING...")
        cycle = self.cycle

        if cycle.phase == Phase.WAITING:
            self._set_phase(Phase.ENTERING)
        if cycle.exit_requested:
            return self._exit

        if cycle.opened_order is None:
            amount = await self._fetch_balance(self.product.quote_currency)
            try:
                quote = await self.gateway.best_bid_ask(self.product.product_id)
            except GatewayError as e:
                await self.retry.backoff("ENTERING: fetch bid", e)
                return self._entering
            if quote.bid is None:
                await self.retry.backoff("ENTERING: fetch bid", GatewayError("empty bid side"))
                return self._entering

            price = truncate_price(quote.bid, self.orders_config.price_decimals)
            size = truncate_size(amount / quote.bid, self.orders_config.size_decimals)
            logger.info(f"New Order - {amount} {quote.bid} {price} {size}")

            try:
                order = await self.gateway.submit_limit_buy(self.product.product_id, price, size)
            except GatewayError as e:
                logger.warning(f"ENTERING: failed to create order: {e}")
                await self.retry.backoff("ENTERING: create order", e)
                return self._entering

            cycle.opened_order = order
            self.retry.reset()

        while self._running:
            await asyncio.sleep(self.orders_config.poll_interval_seconds)

            if cycle.exit_requested:
                return self._exit

            if cycle.cancel_requested:
                try:
                    await self.gateway.cancel_order(cycle.opened_order.id)
                    cycle.cancel_requested = False
                except GatewayError as e:
                    await self.retry.backoff("ENTERING: cancel order", e)

            try:
                order = await self.gateway.order_status(cycle.opened_order.id)
            except GatewayError as e:
                # Presumed cancelled outside the machine
                logger.warning(f"ENTERING: failed to get order: {e}")
                return self._waiting

            if order.settled:
                await self._record_settled(order, holding=True)
                return self._entered
            if order.is_canceled:
                logger.info(f"ENTERING: order {order.id} was cancelled")
                return self._waiting

    async def _entered(self) -> Optional[Handler]:
        logger.info("ENTERED...")
        cycle = self.cycle

        if cycle.exit_requested:
            return self._exit

        if cycle.phase == Phase.ENTERING:
            self._set_phase(Phase.ENTERED)

            price = take_profit_price(
                cycle.opened_order.price,
                self.orders_config.take_profit_pct,
                self.orders_config.price_decimals,
            )
            size = truncate_size(
                await self._fetch_balance(self.product.base_currency),
                self.orders_config.size_decimals,
            )

            try:
                order = await self.gateway.submit_limit_sell(self.product.product_id, price, size)
            except GatewayError as e:
                logger.warning(f"ENTERED: failed to create order: {e}")
                self._set_phase(Phase.ENTERING)
                await self.retry.backoff("ENTERED: create order", e)
                return self._entered

            cycle.quick_sell_order = order
            cycle.opened_order = order
            self.retry.reset()

        while self._running:
            await asyncio.sleep(self.orders_config.poll_interval_seconds)

            if cycle.exit_requested:
                return self._exit

            try:
                order = await self.gateway.order_status(cycle.opened_order.id)
            except GatewayError as e:
                logger.warning(f"ENTERED: failed to get order: {e}")
                return self._waiting

            if order.settled:
                await self._record_settled(order, holding=False)
                return self._exited
            if order.is_canceled:
                logger.info(f"ENTERED: order {order.id} was cancelled")
                return self._waiting

    async def _exited(self) -> Optional[Handler]:
        logger.info("Exited...")
        self._set_phase(Phase.EXITED)

        try:
            await self.gateway.cancel_all_orders(self.product.product_id)
        except GatewayError as e:
            logger.warning(f"EXITED: failed to cancel all open orders: {e}")
            await self.retry.backoff("EXITED: cancel all orders", e)
            return self._exited

        self.retry.reset()
        return self._waiting

    async def _exit(self) -> Optional[Handler]:
        logger.info("Exit...")
        cycle = self.cycle
        self._set_phase(Phase.EXIT)

        if not cycle.holding and cycle.opened_order is None:
            return self._waiting

        if not cycle.holding:
            # The open buy may have filled since the last poll
            try:
                order = await self.gateway.order_status(cycle.opened_order.id)
            except GatewayError as e:
                if not e.is_not_found:
                    logger.warning(f"EXIT: failed to get order: {e}")
                    await self.retry.backoff("EXIT: get order", e)
                    return self._exit
            else:
                if order.settled:
                    await self._record_settled(order, holding=True)

        try:
            await self.gateway.cancel_all_orders(self.product.product_id)
        except GatewayError as e:
            logger.warning(f"EXIT: failed to cancel all open orders: {e}")
            await self.retry.backoff("EXIT: cancel all orders", e)
            return self._exit

        if not cycle.holding:
            # Unfilled buy withdrawn
            self.retry.reset()
            return self._waiting

        try:
            quote = await self.gateway.best_bid_ask(self.product.product_id)
        except GatewayError as e:
            await self.retry.backoff("EXIT: fetch ask", e)
            return self._exit
        if quote.ask is None:
            await self.retry.backoff("EXIT: fetch ask", GatewayError("empty ask side"))
            return self._exit

        price = truncate_price(quote.ask, self.orders_config.price_decimals)
        size = truncate_size(
            await self._fetch_balance(self.product.base_currency),
            self.orders_config.size_decimals,
        )

        try:
            order = await self.gateway.submit_limit_sell(
                self.product.product_id,
                price,
                size,
                time_in_force=self.orders_config.exit_time_in_force,
                cancel_after=self.orders_config.exit_cancel_after,
            )
        except GatewayError as e:
            logger.warning(f"EXIT: failed to create order: {e}")
            await self.retry.backoff("EXIT: create order", e)
            return self._exit

        cycle.opened_order = order

        while self._running:
            await asyncio.sleep(self.orders_config.poll_interval_seconds)

            try:
                order = await self.gateway.order_status(cycle.opened_order.id)
            except GatewayError as e:
                logger.warning(f"EXIT: failed to get order: {e}")
                await self.retry.backoff("EXIT: get order", e)
                return self._exit

            if order.settled:
                await self._record_settled(order, holding=False)
                self.retry.reset()
                return self._exited
            if order.is_canceled:
                # Time-in-force expired unfilled; reprice
                await self.retry.backoff("EXIT: get order", GatewayError("exit order expired"))
                return self._exit

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _new_cycle(self, phase: Phase, holding: bool = False) -> None:
        self.cycle = TradingCycle(phase=phase, holding=holding)
        self.cycles_started += 1
        self.recent_phases.append(phase)

    def _set_phase(self, phase: Phase) -> None:
        if self.cycle.phase != phase:
            self.cycle.phase = phase
            self.recent_phases.append(phase)

    async def _record_settled(self, order: Order, holding: bool) -> None:
        self.cycle.holding = holding
        self.cycle.opened_order = order
        self.cycle.settled_orders.append(order)
        logger.info(f"Settled - {order}")
        if self.on_settled:
            await self.on_settled(order)

    async def _fetch_balance(self, currency: str) -> float:
        try:
            return await self.gateway.available_balance(currency)
        except GatewayError as e:
            logger.critical(f"fetch balance {currency}: {e}")
            raise BalanceUnavailableError(f"Balance for {currency} unavailable: {e}") from e
