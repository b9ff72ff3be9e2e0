"""Market data and order gateway for the Coinbase Exchange REST API.

Handles:
- Account balances
- Order book and best bid/ask
- Limit order placement
- Order status lookup
- Order cancellation (single and all)

PaperGateway simulates the same surface for paper trading and tests.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import replace
from typing import Optional, Dict, List, Any, Callable
from urllib.parse import urlencode

import aiohttp

from ..config import Config
from ..models.types import (
    Order,
    OrderSide,
    OrderBook,
    BookLevel,
    BestBidAsk,
)

logger = logging.getLogger(__name__)


CANCEL_AFTER_SECONDS = {
    "min": 60,
    "hour": 3600,
    "day": 86400,
}


class GatewayError(Exception):
    """Raised when a gateway call fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class CoinbaseGateway:
    """Gateway for the Coinbase Exchange (formerly GDAX) REST API.

    Usage:
        gateway = CoinbaseGateway(config, key, secret, passphrase)
        await gateway.start()
        balance = await gateway.available_balance("USD")
    """

    def __init__(
        self,
        config: Config,
        api_key: str,
        api_secret: str,
        passphrase: str,
        use_sandbox: bool = False,
    ):
        self.config = config
        self.gateway_config = config.gateway
        self.orders_config = config.orders
        self.product_id = config.product.product_id

        self.api_key = api_key
        self.api_secret = api_secret
        self.passphrase = passphrase
        self.use_sandbox = use_sandbox

        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        """Get API base URL."""
        if self.use_sandbox:
            return self.gateway_config.sandbox_api_url
        return self.gateway_config.api_url

    async def start(self) -> None:
        """Start the gateway."""
        timeout = aiohttp.ClientTimeout(total=self.gateway_config.request_timeout_seconds)
        self._session = aiohttp.ClientSession(timeout=timeout)
        logger.info(f"Coinbase gateway started (sandbox={self.use_sandbox})")

    async def stop(self) -> None:
        """Stop the gateway."""
        if self._session:
            await self._session.close()
            self._session = None

    async def available_balance(self, currency: str) -> float:
        """Available (unheld) balance for a currency."""
        accounts = await self._request("GET", "/accounts")
        for account in accounts:
            if account.get("currency") == currency:
                return float(account.get("available", 0))
        raise GatewayError(f"No account for currency {currency}", status=404)

    async def order_book(self, product_id: str) -> OrderBook:
        """Level 1 order book for a product."""
        data = await self._request(
            "GET", f"/products/{product_id}/book", params={"level": 1}, signed=False
        )
        return OrderBook(
            product_id=product_id,
            bids=[BookLevel(float(b[0]), float(b[1])) for b in data.get("bids", [])],
            asks=[BookLevel(float(a[0]), float(a[1])) for a in data.get("asks", [])],
        )

    async def best_bid_ask(self, product_id: str) -> BestBidAsk:
        """Best bid and ask prices."""
        book = await self.order_book(product_id)
        return BestBidAsk(
            bid=book.best_bid.price if book.best_bid else None,
            ask=book.best_ask.price if book.best_ask else None,
        )

    async def submit_limit_buy(self, product_id: str, price: float, size: float) -> Order:
        """Place a limit buy order."""
        return await self._submit_limit(OrderSide.BUY, product_id, price, size)

    async def submit_limit_sell(
        self,
        product_id: str,
        price: float,
        size: float,
        time_in_force: Optional[str] = None,
        cancel_after: Optional[str] = None,
    ) -> Order:
        """Place a limit sell order, optionally good-till-time."""
        return await self._submit_limit(
            OrderSide.SELL, product_id, price, size, time_in_force, cancel_after
        )

    async def order_status(self, order_id: str) -> Order:
        """Fetch an order by id.

        Canceled orders are purged by the exchange and come back as 404.
        """
        data = await self._request("GET", f"/orders/{order_id}")
        return Order.from_exchange(data)

    async def cancel_order(self, order_id: str) -> None:
        """Cancel an open order."""
        await self._request("DELETE", f"/orders/{order_id}")

    async def cancel_all_orders(self, product_id: Optional[str] = None) -> List[str]:
        """Cancel all open orders, returning the ids cancelled."""
        params = {"product_id": product_id} if product_id else None
        result = await self._request("DELETE", "/orders", params=params)
        return list(result or [])

    async def _submit_limit(
        self,
        side: OrderSide,
        product_id: str,
        price: float,
        size: float,
        time_in_force: Optional[str] = None,
        cancel_after: Optional[str] = None,
    ) -> Order:
        body: Dict[str, Any] = {
            "type": "limit",
            "side": side.value,
            "product_id": product_id,
            "price": f"{price:.{self.orders_config.price_decimals}f}",
            "size": f"{size:.{self.orders_config.size_decimals}f}",
            "client_oid": str(uuid.uuid4()),
        }
        if time_in_force:
            body["time_in_force"] = time_in_force
        if cancel_after:
            body["cancel_after"] = cancel_after

        data = await self._request("POST", "/orders", body=body)
        return Order.from_exchange(data)

    def _sign(self, timestamp: str, method: str, request_path: str, body: str) -> str:
        """CB-ACCESS-SIGN: base64(HMAC-SHA256(base64decode(secret), prehash))."""
        message = f"{timestamp}{method}{request_path}{body}"
        key = base64.b64decode(self.api_secret)
        digest = hmac.new(key, message.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Any:
        """Make an API request, raising GatewayError on any failure."""
        if not self._session:
            raise RuntimeError("Gateway not started")

        request_path = path
        if params:
            request_path = f"{path}?{urlencode(params)}"
        payload = json.dumps(body) if body is not None else ""

        headers = {"Content-Type": "application/json"}
        if signed:
            timestamp = str(time.time())
            headers.update({
                "CB-ACCESS-KEY": self.api_key,
                "CB-ACCESS-SIGN": self._sign(timestamp, method, request_path, payload),
                "CB-ACCESS-TIMESTAMP": timestamp,
                "CB-ACCESS-PASSPHRASE": self.passphrase,
            })

        url = f"{self.base_url}{request_path}"
        try:
            async with self._session.request(
                method, url, headers=headers, data=payload or None
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise GatewayError(
                        f"{method} {path} failed ({resp.status}): {text[:200]}",
                        status=resp.status,
                    )
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayError(f"{method} {path} failed: {e!r}") from e
        except ValueError as e:
            # Body was not valid JSON
            raise GatewayError(f"{method} {path} returned an invalid body: {e}") from e


class PaperGateway:
    """Paper trading gateway.

    Simulates balances, holds and limit order fills without API calls.
    Market data comes from `market` (any gateway exposing order_book) when
    given, otherwise from a book set with set_book().
    """

    def __init__(
        self,
        config: Config,
        market: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.product = config.product
        self.market = market
        self.clock = clock

        self.balances: Dict[str, float] = {
            self.product.quote_currency: config.gateway.paper_quote_balance,
            self.product.base_currency: 0.0,
        }
        self._book = OrderBook(product_id=self.product.product_id)
        self._orders: Dict[str, Order] = {}
        self._expires_at: Dict[str, float] = {}
        self._next_order_id = 1

    async def start(self) -> None:
        """Start the gateway."""
        if self.market is not None:
            await self.market.start()
        logger.info("Paper gateway started")

    async def stop(self) -> None:
        """Stop the gateway."""
        if self.market is not None:
            await self.market.stop()

    def set_book(
        self,
        bids: List[tuple],
        asks: List[tuple],
    ) -> None:
        """Replace the simulated book with (price, size) levels."""
        self._book = OrderBook(
            product_id=self.product.product_id,
            bids=[BookLevel(p, s) for p, s in bids],
            asks=[BookLevel(p, s) for p, s in asks],
        )

    @property
    def orders(self) -> List[Order]:
        return list(self._orders.values())

    async def available_balance(self, currency: str) -> float:
        if currency not in self.balances:
            raise GatewayError(f"No account for currency {currency}", status=404)
        return self.balances[currency]

    async def order_book(self, product_id: str) -> OrderBook:
        if self.market is not None:
            return await self.market.order_book(product_id)
        return self._book

    async def best_bid_ask(self, product_id: str) -> BestBidAsk:
        book = await self.order_book(product_id)
        return BestBidAsk(
            bid=book.best_bid.price if book.best_bid else None,
            ask=book.best_ask.price if book.best_ask else None,
        )

    async def submit_limit_buy(self, product_id: str, price: float, size: float) -> Order:
        return self._place(OrderSide.BUY, product_id, price, size)

    async def submit_limit_sell(
        self,
        product_id: str,
        price: float,
        size: float,
        time_in_force: Optional[str] = None,
        cancel_after: Optional[str] = None,
    ) -> Order:
        return self._place(OrderSide.SELL, product_id, price, size, time_in_force, cancel_after)

    async def order_status(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None or order.is_canceled:
            raise GatewayError(f"Order {order_id} not found", status=404)

        if order.status == "open":
            expires_at = self._expires_at.get(order_id)
            if expires_at is not None and self.clock() >= expires_at:
                self._cancel(order)
                raise GatewayError(f"Order {order_id} not found", status=404)
            await self._try_fill(order)

        return replace(self._orders[order_id])

    async def cancel_order(self, order_id: str) -> None:
        order = self._orders.get(order_id)
        if order is None or order.status != "open":
            raise GatewayError(f"Order {order_id} not open", status=404)
        self._cancel(order)

    async def cancel_all_orders(self, product_id: Optional[str] = None) -> List[str]:
        cancelled = []
        for order in list(self._orders.values()):
            if order.status == "open" and (product_id is None or order.product_id == product_id):
                self._cancel(order)
                cancelled.append(order.id)
        return cancelled

    def _place(
        self,
        side: OrderSide,
        product_id: str,
        price: float,
        size: float,
        time_in_force: Optional[str] = None,
        cancel_after: Optional[str] = None,
    ) -> Order:
        if price <= 0 or size < self.product.min_base_size:
            raise GatewayError(f"Invalid order: price={price} size={size}", status=400)

        base, quote = self.product.base_currency, self.product.quote_currency
        if side == OrderSide.BUY:
            cost = price * size
            if cost > self.balances[quote] + 1e-9:
                raise GatewayError("Insufficient funds", status=400)
            self.balances[quote] -= cost
        else:
            if size > self.balances[base] + 1e-12:
                raise GatewayError("Insufficient funds", status=400)
            self.balances[base] -= size

        order = Order(
            id=f"paper-{self._next_order_id}",
            product_id=product_id,
            side=side,
            price=price,
            size=size,
            status="open",
            time_in_force=time_in_force or "GTC",
            cancel_after=cancel_after,
            created_at=int(self.clock() * 1000),
        )
        self._next_order_id += 1
        self._orders[order.id] = order

        if time_in_force == "GTT" and cancel_after in CANCEL_AFTER_SECONDS:
            self._expires_at[order.id] = self.clock() + CANCEL_AFTER_SECONDS[cancel_after]

        return replace(order)

    async def _try_fill(self, order: Order) -> None:
        book = await self.order_book(order.product_id)
        if order.side == OrderSide.BUY:
            crosses = book.best_ask is not None and book.best_ask.price <= order.price
        else:
            crosses = book.best_bid is not None and book.best_bid.price >= order.price
        if not crosses:
            return

        base, quote = self.product.base_currency, self.product.quote_currency
        if order.side == OrderSide.BUY:
            self.balances[base] += order.size
        else:
            self.balances[quote] += order.price * order.size

        self._orders[order.id] = replace(
            order,
            settled=True,
            status="done",
            done_reason="filled",
            filled_size=order.size,
        )

    def _cancel(self, order: Order) -> None:
        base, quote = self.product.base_currency, self.product.quote_currency
        if order.side == OrderSide.BUY:
            self.balances[quote] += order.price * order.size
        else:
            self.balances[base] += order.size
        self._orders[order.id] = replace(order, status="done", done_reason="canceled")
        self._expires_at.pop(order.id, None)
