"""Tests for the Orchestrator."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from trend_trader.models.types import Order, OrderSide, Phase, ReferenceAverage
from trend_trader.orchestrator import Orchestrator, TradingMode
from trend_trader.services.feed import MockFeed, ReferenceFeed
from trend_trader.services.gateway import CoinbaseGateway, PaperGateway, GatewayError
from trend_trader.services.retry import RetryExhaustedError
from trend_trader.services.state_machine import BalanceUnavailableError


@pytest.fixture
def orchestrator(sample_config):
    return Orchestrator(sample_config, mode=TradingMode.MOCK)


class TestConstruction:

    def test_mock_mode(self, orchestrator):
        assert isinstance(orchestrator.gateway, PaperGateway)
        assert orchestrator.gateway.market is None
        assert isinstance(orchestrator.feed, MockFeed)
        assert orchestrator.signal_engine.machine is orchestrator.machine

    def test_paper_mode_uses_public_market_data(self, sample_config):
        orchestrator = Orchestrator(sample_config, mode=TradingMode.PAPER)
        assert isinstance(orchestrator.gateway, PaperGateway)
        assert isinstance(orchestrator.gateway.market, CoinbaseGateway)
        assert type(orchestrator.feed) is ReferenceFeed

    def test_live_mode_requires_credentials(self, sample_config):
        with pytest.raises(ValueError):
            Orchestrator(sample_config, mode=TradingMode.LIVE, api_key="k")

    def test_live_mode(self, sample_config):
        orchestrator = Orchestrator(
            sample_config, mode=TradingMode.LIVE,
            api_key="k", api_secret="c2VjcmV0", passphrase="p", use_sandbox=True,
        )
        assert isinstance(orchestrator.gateway, CoinbaseGateway)
        assert orchestrator.gateway.use_sandbox


class TestReconcile:
    """Reconciliation after a fatal machine error."""

    @pytest.mark.asyncio
    async def test_holding_when_base_balance_left(self, orchestrator):
        gateway = orchestrator.gateway
        gateway.set_book(bids=[(100.0, 1.0)], asks=[(100.5, 1.0)])
        gateway.balances["BTC"] = 0.5
        await gateway.submit_limit_sell("BTC-USD", 110.0, 0.5)

        assert await orchestrator.reconcile() is True
        assert all(o.is_canceled for o in gateway.orders)
        assert gateway.balances["BTC"] == 0.5

    @pytest.mark.asyncio
    async def test_not_holding_without_base(self, orchestrator):
        gateway = orchestrator.gateway
        await gateway.submit_limit_buy("BTC-USD", 90.0, 1.0)

        assert await orchestrator.reconcile() is False
        assert gateway.balances["USD"] == 1000.0

    @pytest.mark.asyncio
    async def test_dust_is_not_a_position(self, orchestrator):
        orchestrator.gateway.balances["BTC"] = 0.000001
        assert await orchestrator.reconcile() is False

    @pytest.mark.asyncio
    async def test_gateway_failure(self, orchestrator):
        orchestrator.gateway.cancel_all_orders = AsyncMock(side_effect=GatewayError("down"))
        assert await orchestrator.reconcile() is False


class TestSupervision:

    @pytest.mark.asyncio
    async def test_restart_resumes_holding(self, orchestrator):
        orchestrator.state.is_running = True
        orchestrator.gateway.balances["BTC"] = 1.0
        orchestrator.machine.run = AsyncMock(side_effect=[BalanceUnavailableError("x"), None])

        await orchestrator._supervise_machine()

        assert orchestrator.state.machine_restarts == 1
        assert orchestrator.machine.run.await_args_list[0].kwargs == {"resume_holding": False}
        assert orchestrator.machine.run.await_args_list[1].kwargs == {"resume_holding": True}

    @pytest.mark.asyncio
    async def test_gives_up_after_max_restarts(self, orchestrator):
        orchestrator.state.is_running = True
        orchestrator.machine.run = AsyncMock(side_effect=RetryExhaustedError("op", 3))

        with pytest.raises(RetryExhaustedError):
            await orchestrator._supervise_machine()

        max_restarts = orchestrator.config.retry.max_restarts
        assert orchestrator.machine.run.await_count == max_restarts + 1


class TestCallbacks:

    @pytest.mark.asyncio
    async def test_feed_record_updates_tracker(self, orchestrator):
        orchestrator.feed.open_gate()
        await orchestrator.feed.feed_record(ReferenceAverage("BTC-USD", 6400.0))

        assert orchestrator.tracker.reference_average.price == 6400.0
        assert orchestrator.state.records_accepted == 1

    @pytest.mark.asyncio
    async def test_settled_order_journaled(self, orchestrator, sample_order):
        orchestrator.store.connect()
        try:
            await orchestrator._on_settled(sample_order)
            rows = orchestrator.store.get_orders("BTC-USD")
        finally:
            orchestrator.store.close()

        assert orchestrator.state.orders_settled == 1
        assert rows[0]["order_id"] == sample_order.id

    def test_evaluate_counts_triggers(self, orchestrator):
        orchestrator.signal_engine.evaluate = lambda: None
        orchestrator._evaluate_signal()
        assert orchestrator.state.triggers_fired == 0


class TestReporting:

    def test_status_before_start(self, orchestrator):
        status = orchestrator.get_status()
        assert status["phase"] == "Waiting"
        assert status["reference_average"] is None
        assert status["last_trade_price"] is None
        assert status["signal_strength"] == 0
        assert status["holding"] is False
        assert status["opened_order"] is None
        assert status["settled_orders"] == []

    def test_status_with_order(self, orchestrator, sample_order):
        orchestrator.machine.cycle.opened_order = sample_order
        orchestrator.machine.cycle.settled_orders.append(sample_order)
        status = orchestrator.get_status()
        assert status["opened_order"]["id"] == sample_order.id
        assert status["settled_orders"][0]["side"] == "buy"

    def test_stats(self, orchestrator):
        stats = orchestrator.get_stats()
        assert stats["mode"] == "mock"
        assert stats["is_running"] is False
        assert stats["cycles_started"] == 0
        assert "records_received" in stats["feed_stats"]

    def test_log_status_without_prices(self, orchestrator):
        orchestrator._log_status()
        orchestrator._log_orders()


class TestRunLoop:
    """Start the whole system in mock mode."""

    @pytest.mark.asyncio
    async def test_signal_opens_buy(self, sample_config, wait_until):
        sample_config.signal.threshold = 3
        orchestrator = Orchestrator(sample_config, mode=TradingMode.MOCK)
        orchestrator.gateway.set_book(bids=[(100.0, 1.0)], asks=[(100.01, 2.0)])

        task = asyncio.create_task(orchestrator.start())
        try:
            await wait_until(lambda: orchestrator.machine.cycle.buy_signal is not None)
            assert orchestrator.tracker.last_trade_price == 100.01

            orchestrator.feed.open_gate()
            await orchestrator.feed.feed_record(ReferenceAverage("BTC-USD", 99.0))

            await wait_until(lambda: orchestrator.machine.cycle.opened_order is not None)
            order = orchestrator.machine.cycle.opened_order
            assert orchestrator.machine.phase == Phase.ENTERING
            assert order.side == OrderSide.BUY
            assert order.price == 100.0
            assert order.size == 10.0
            assert orchestrator.state.triggers_fired >= 1
        finally:
            await orchestrator.stop()
            await asyncio.wait_for(task, timeout=2.0)

        assert orchestrator.state.is_running is False
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, orchestrator, wait_until):
        task = asyncio.create_task(orchestrator.start())
        await wait_until(lambda: orchestrator.state.is_running)
        await orchestrator.stop()
        await orchestrator.stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert not orchestrator.machine.is_running
