"""Core data types for the trend-trader system."""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from enum import Enum, auto
from typing import Optional, List
import time


class Phase(Enum):
    """Order-lifecycle phases of a trading cycle."""
    WAITING = "Waiting"
    ENTERING = "Entering"
    ENTERED = "Entered"
    EXITING = "Exiting"
    EXIT = "Exit"
    EXITED = "Exited"

    def __str__(self) -> str:
        return self.value


class OrderSide(Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"


class Trigger(Enum):
    """Actions the signal engine can inject into the state machine."""
    BUY_SIGNAL = auto()
    CANCEL_REQUEST = auto()
    FORCED_EXIT = auto()
    STOP_LOSS = auto()


@dataclass
class Order:
    """An order as reported by the exchange."""
    id: str
    product_id: str
    side: OrderSide
    price: float
    size: float
    settled: bool = False
    status: str = "pending"
    done_reason: Optional[str] = None
    filled_size: float = 0.0
    time_in_force: str = "GTC"
    cancel_after: Optional[str] = None
    created_at: int = 0

    @property
    def is_canceled(self) -> bool:
        """Order finished without filling."""
        return self.status == "done" and self.done_reason == "canceled"

    @staticmethod
    def from_exchange(data: dict) -> "Order":
        """Build an Order from an exchange order payload.

        Exchange format:
        {
            "id": "d0c5340b-6d6c-49d9-b567-48c4bfca13d2",
            "product_id": "BTC-USD",
            "side": "buy",
            "price": "100.23",
            "size": "0.01000000",
            "status": "done",
            "settled": true,
            "done_reason": "filled",
            "filled_size": "0.01000000",
            "time_in_force": "GTC"
        }
        """
        return Order(
            id=data["id"],
            product_id=data.get("product_id", ""),
            side=OrderSide(data.get("side", "buy")),
            price=float(data.get("price") or 0.0),
            size=float(data.get("size") or 0.0),
            settled=bool(data.get("settled", False)),
            status=data.get("status", "pending"),
            done_reason=data.get("done_reason"),
            filled_size=float(data.get("filled_size") or 0.0),
            time_in_force=data.get("time_in_force", "GTC"),
            cancel_after=data.get("cancel_after"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "side": self.side.value,
            "price": self.price,
            "size": self.size,
            "settled": self.settled,
            "status": self.status,
            "done_reason": self.done_reason,
            "filled_size": self.filled_size,
            "time_in_force": self.time_in_force,
            "cancel_after": self.cancel_after,
        }

    def __str__(self) -> str:
        return (
            f"{self.side.value} {self.size:.8f} {self.product_id} @ {self.price:.2f} "
            f"[{self.id}] status={self.status} settled={self.settled}"
        )


@dataclass
class BookLevel:
    """A single order book level."""
    price: float
    size: float


@dataclass
class OrderBook:
    """Top of the order book for a product."""
    product_id: str
    bids: List[BookLevel] = field(default_factory=list)
    asks: List[BookLevel] = field(default_factory=list)

    @property
    def best_bid(self) -> Optional[BookLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[BookLevel]:
        return self.asks[0] if self.asks else None


@dataclass
class BestBidAsk:
    """Best bid and ask prices; either side may be missing."""
    bid: Optional[float]
    ask: Optional[float]


@dataclass
class ReferenceAverage:
    """A decoded book-price-average record from the reference stream."""
    product_id: str
    price: float


@dataclass(frozen=True)
class PriceSnapshot:
    """Read-only view of the latest prices."""
    last_trade_price: Optional[float]
    reference_average: Optional[ReferenceAverage]

    @property
    def is_complete(self) -> bool:
        return self.last_trade_price is not None and self.reference_average is not None


@dataclass
class TradingCycle:
    """State of one Waiting -> Exited loop.

    Owned by the state machine; replaced wholesale each time Waiting is entered.
    """
    phase: Phase = Phase.WAITING
    holding: bool = False
    opened_order: Optional[Order] = None
    quick_sell_order: Optional[Order] = None
    settled_orders: List[Order] = field(default_factory=list)
    buy_signal: Optional[asyncio.Future] = None
    cancel_requested: bool = False
    exit_requested: bool = False
    started_at: int = field(default_factory=lambda: current_ts_ms())

    @property
    def last_settled_price(self) -> Optional[float]:
        if not self.settled_orders:
            return None
        return self.settled_orders[-1].price


def _truncate(value: float, decimals: int) -> float:
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_DOWN))


def truncate_price(price: float, decimals: int = 2) -> float:
    """Truncate a price toward zero (never rounds up)."""
    return _truncate(price, decimals)


def truncate_size(size: float, decimals: int = 8) -> float:
    """Truncate an order size toward zero (never rounds up)."""
    return _truncate(size, decimals)


def current_ts_ms() -> int:
    """Get current timestamp in milliseconds."""
    return int(time.time() * 1000)
