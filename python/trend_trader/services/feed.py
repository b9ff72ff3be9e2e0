"""WebSocket feed for the reference book-price average.

Each message is one JSON record:
{
    "PRODUCT_ID": "BTC-USD",
    "TICKER_SYMBOL_AVG": 6412.27
}

Records arrive at the producer's pace; a throttle gate lets through at
most one record per gate opening and discards the rest.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional, Callable, Awaitable, List, Union
import websockets
from websockets.exceptions import ConnectionClosed

from ..config import Config, FeedConfig
from ..models.types import ReferenceAverage

logger = logging.getLogger(__name__)


class FeedDecodeError(Exception):
    """Raised when a stream record cannot be decoded."""


@dataclass
class FeedStats:
    """Statistics for the feed."""
    records_received: int = 0
    records_accepted: int = 0
    records_discarded: int = 0
    reconnections: int = 0
    errors: int = 0
    last_price: Optional[float] = None


RecordCallback = Callable[[ReferenceAverage], Awaitable[None]]


def decode_record(raw: Union[str, bytes], config: FeedConfig) -> ReferenceAverage:
    """Decode a raw stream record.

    Raises:
        FeedDecodeError: if the payload is not a valid record
    """
    try:
        data = json.loads(raw)
        return ReferenceAverage(
            product_id=str(data[config.product_field]),
            price=float(data[config.price_field]),
        )
    except (ValueError, KeyError, TypeError) as e:
        preview = raw[:100] if raw else raw
        raise FeedDecodeError(f"Failed to decode record {preview!r}: {e}") from e


class ThrottleGate:
    """Single-slot gate: open() admits exactly one subsequent record."""

    def __init__(self):
        self._open = False

    def open(self) -> None:
        self._open = True

    def try_pass(self) -> bool:
        if not self._open:
            return False
        self._open = False
        return True

    @property
    def is_open(self) -> bool:
        return self._open


class ReferenceFeed:
    """WebSocket consumer for the reference average stream.

    Usage:
        feed = ReferenceFeed(config)
        feed.on_record = async_record_handler
        await feed.run()
    """

    def __init__(self, config: Config):
        self.config = config
        self.feed_config = config.feed

        self.on_record: Optional[RecordCallback] = None
        self.gate = ThrottleGate()

        self._ws = None
        self._running = False
        self._reconnect_delay = self.feed_config.reconnect_delay_seconds
        self._max_reconnect_delay = self.feed_config.max_reconnect_delay_seconds

        self.stats = FeedStats()

    @property
    def ws_url(self) -> str:
        return self.feed_config.ws_url

    def open_gate(self) -> None:
        """Allow the next record through."""
        self.gate.open()

    async def run(self) -> None:
        """Run the feed (blocking).

        Raises:
            FeedDecodeError: a record could not be decoded
        """
        self._running = True
        logger.info(f"Starting reference feed from {self.ws_url}")

        while self._running:
            try:
                await self._connect_and_stream()
            except FeedDecodeError:
                self._running = False
                raise
            except ConnectionClosed as e:
                logger.warning(f"WebSocket connection closed: {e}")
                self.stats.reconnections += 1
            except Exception as e:
                logger.error(f"Feed error: {e}")
                self.stats.errors += 1

            if self._running:
                logger.info(f"Reconnecting in {self._reconnect_delay}s...")
                await asyncio.sleep(self._reconnect_delay)
                # Exponential backoff
                self._reconnect_delay = min(
                    self._reconnect_delay * 2,
                    self._max_reconnect_delay
                )

    async def stop(self) -> None:
        """Stop the feed."""
        self._running = False
        if self._ws:
            await self._ws.close()

    async def _connect_and_stream(self) -> None:
        async with websockets.connect(
            self.ws_url,
            ping_interval=20,
            ping_timeout=10,
        ) as ws:
            self._ws = ws
            logger.info(f"Connected to {self.ws_url}")

            # Reset reconnect delay on successful connection
            self._reconnect_delay = self.feed_config.reconnect_delay_seconds

            async for message in ws:
                await self._handle_message(message)

    async def _handle_message(self, raw_message: Union[str, bytes]) -> None:
        self.stats.records_received += 1
        if not self.gate.try_pass():
            self.stats.records_discarded += 1
            return

        record = decode_record(raw_message, self.feed_config)
        self.stats.records_accepted += 1
        self.stats.last_price = record.price

        if self.on_record:
            await self.on_record(record)

    def get_stats_dict(self) -> dict:
        return {
            "records_received": self.stats.records_received,
            "records_accepted": self.stats.records_accepted,
            "records_discarded": self.stats.records_discarded,
            "reconnections": self.stats.reconnections,
            "errors": self.stats.errors,
            "last_price": self.stats.last_price,
        }


class MockFeed(ReferenceFeed):
    """Feed for testing and paper runs without a stream.

    Allows pushing raw messages manually; run() idles until stopped.
    """

    def __init__(self, config: Config):
        super().__init__(config)
        self._stopped = asyncio.Event()

    async def run(self) -> None:
        self._running = True
        await self._stopped.wait()

    async def stop(self) -> None:
        self._running = False
        self._stopped.set()

    async def feed_raw(self, raw_message: Union[str, bytes]) -> None:
        """Push one raw record through the gate."""
        await self._handle_message(raw_message)

    async def feed_record(self, record: ReferenceAverage) -> None:
        """Push one record through the gate."""
        payload = {
            self.feed_config.product_field: record.product_id,
            self.feed_config.price_field: record.price,
        }
        await self._handle_message(json.dumps(payload))

    async def feed_records(self, records: List[ReferenceAverage]) -> None:
        for record in records:
            await self.feed_record(record)
