"""Tests for the SignalAccumulator."""

import asyncio

import pytest
from trend_trader.config import Config
from trend_trader.models.types import (
    Phase,
    Trigger,
    Order,
    OrderSide,
    ReferenceAverage,
    TradingCycle,
    truncate_size,
)
from trend_trader.services.price_tracker import PriceTracker
from trend_trader.services.signal_engine import SignalAccumulator


class FakeMachine:
    """Records requests instead of acting on them."""

    def __init__(self, phase: Phase = Phase.WAITING, accept: bool = True):
        self.cycle = TradingCycle(phase=phase)
        self.accept = accept
        self.calls = []

    @property
    def phase(self) -> Phase:
        return self.cycle.phase

    def offer_buy_signal(self) -> bool:
        self.calls.append("buy")
        return self.accept

    def request_cancel(self) -> bool:
        self.calls.append("cancel")
        return self.accept

    def request_exit(self, reason: str = "") -> bool:
        self.calls.append("exit")
        return self.accept


def make_engine(phase=Phase.WAITING, price=101.0, average=100.0, accept=True):
    config = Config()
    tracker = PriceTracker(config, gateway=None)
    tracker.last_trade_price = price
    if average is not None:
        tracker.accept_reference_average(ReferenceAverage("BTC-USD", average))
    machine = FakeMachine(phase, accept)
    return SignalAccumulator(config, tracker, machine), tracker, machine


def hold_position(machine: FakeMachine, price: float = 100.0) -> None:
    machine.cycle.holding = True
    machine.cycle.settled_orders.append(
        Order(id="b1", product_id="BTC-USD", side=OrderSide.BUY, price=price, size=1.0, settled=True)
    )


class TestCounter:
    """Signal strength counting."""

    def test_increments_while_condition_holds(self):
        engine, _, _ = make_engine()
        for expected in range(1, 6):
            engine.evaluate()
            assert engine.signal_strength == expected

    def test_resets_when_condition_breaks(self):
        engine, tracker, _ = make_engine()
        for _ in range(5):
            engine.evaluate()
        tracker.last_trade_price = 99.0
        engine.evaluate()
        assert engine.signal_strength == 0

    def test_equal_prices_reset(self):
        engine, tracker, _ = make_engine(price=100.0, average=100.0)
        engine.signal_strength = 3
        engine.evaluate()
        assert engine.signal_strength == 0

    def test_never_negative(self):
        engine, _, _ = make_engine(price=99.0)
        for _ in range(10):
            engine.evaluate()
            assert engine.signal_strength == 0

    def test_incomplete_snapshot_skips_tick(self):
        engine, _, machine = make_engine(average=None)
        engine.signal_strength = 4
        assert engine.evaluate() is None
        assert engine.signal_strength == 4
        assert machine.calls == []

    @pytest.mark.parametrize("phase", [Phase.EXIT, Phase.EXITED, Phase.EXITING])
    def test_uncounted_phases(self, phase):
        engine, _, machine = make_engine(phase=phase, price=99.0)
        for _ in range(25):
            assert engine.evaluate() is None
        assert engine.signal_strength == 0
        assert machine.calls == []


class TestThreshold:
    """Phase actions at the threshold."""

    def test_waiting_fires_buy_at_threshold(self):
        engine, _, machine = make_engine()
        for _ in range(19):
            assert engine.evaluate() is None
        assert machine.calls == []

        assert engine.evaluate() == Trigger.BUY_SIGNAL
        assert machine.calls == ["buy"]
        assert engine.signal_strength == 0

    def test_fires_once_per_threshold(self):
        engine, _, machine = make_engine()
        for _ in range(21):
            engine.evaluate()
        assert machine.calls == ["buy"]
        assert engine.triggers_fired == 1
        assert engine.signal_strength == 1

    def test_entering_requests_cancel(self):
        engine, _, machine = make_engine(phase=Phase.ENTERING, price=99.0)
        results = [engine.evaluate() for _ in range(20)]
        assert results[-1] == Trigger.CANCEL_REQUEST
        assert machine.calls == ["cancel"]

    def test_entered_forces_exit(self):
        engine, _, machine = make_engine(phase=Phase.ENTERED, price=99.5)
        results = [engine.evaluate() for _ in range(20)]
        assert results[-1] == Trigger.FORCED_EXIT
        assert machine.calls == ["exit"]
        assert engine.last_trigger == Trigger.FORCED_EXIT

    def test_entering_ignores_bullish_ticks(self):
        engine, _, machine = make_engine(phase=Phase.ENTERING, price=101.0)
        for _ in range(30):
            engine.evaluate()
        assert machine.calls == []

    def test_rejected_request_is_not_counted_as_fired(self):
        engine, _, machine = make_engine(accept=False)
        for _ in range(20):
            engine.evaluate()
        assert machine.calls == ["buy"]
        assert engine.triggers_fired == 0
        assert engine.signal_strength == 0

    def test_custom_threshold(self):
        engine, _, machine = make_engine()
        engine.signal_config.threshold = 3
        results = [engine.evaluate() for _ in range(3)]
        assert results == [None, None, Trigger.BUY_SIGNAL]


class TestStopLoss:
    """Stop-loss check ahead of the counter."""

    def test_stop_loss_fires_when_price_below_floor(self):
        engine, tracker, machine = make_engine(phase=Phase.ENTERED, price=98.9, average=90.0)
        hold_position(machine, 100.0)
        engine.signal_strength = 5

        assert engine.evaluate() == Trigger.STOP_LOSS
        assert machine.calls == ["exit"]
        # Counter untouched on a stop-loss tick
        assert engine.signal_strength == 5

    def test_price_at_floor_does_not_fire(self):
        engine, _, machine = make_engine(phase=Phase.ENTERED, price=99.0, average=90.0)
        hold_position(machine, 100.0)
        assert engine.evaluate() is None
        assert machine.calls == []

    def test_stop_loss_runs_in_uncounted_phase(self):
        engine, _, machine = make_engine(phase=Phase.EXITED, price=50.0)
        hold_position(machine, 100.0)
        assert engine.evaluate() == Trigger.STOP_LOSS

    def test_not_holding_no_stop_loss(self):
        engine, _, machine = make_engine(phase=Phase.WAITING, price=50.0, average=40.0)
        assert engine.evaluate() is None
        assert "exit" not in machine.calls

    def test_rejected_exit_does_not_count(self):
        engine, _, machine = make_engine(phase=Phase.EXIT, price=50.0, accept=False)
        hold_position(machine, 100.0)
        assert engine.evaluate() is None
        assert engine.triggers_fired == 0

    def test_reset(self):
        engine, _, _ = make_engine()
        for _ in range(20):
            engine.evaluate()
        engine.reset()
        assert engine.signal_strength == 0
        assert engine.triggers_fired == 0
        assert engine.last_trigger is None


class TestWithStateMachine:
    """Accumulator driving a running state machine."""

    @pytest.mark.asyncio
    async def test_twenty_bullish_ticks_open_one_buy(
        self, sample_config, paper_gateway, tracker, machine, wait_until
    ):
        paper_gateway.set_book(bids=[(100.99, 1.0)], asks=[(101.0, 5.0)])
        await tracker.refresh_trade_price()
        assert tracker.last_trade_price == 101.0
        tracker.accept_reference_average(ReferenceAverage("BTC-USD", 100.0))

        engine = SignalAccumulator(sample_config, tracker, machine)
        task = asyncio.create_task(machine.run())
        try:
            await wait_until(lambda: machine.cycle.buy_signal is not None)

            results = [engine.evaluate() for _ in range(20)]
            assert results[:19] == [None] * 19
            assert results[19] == Trigger.BUY_SIGNAL

            await wait_until(lambda: machine.cycle.opened_order is not None)
            assert machine.phase == Phase.ENTERING
            assert engine.evaluate() is None

            order = machine.cycle.opened_order
            assert order.side == OrderSide.BUY
            assert order.price == 100.99
            assert order.size == truncate_size(1000.0 / 100.99)
            assert order.price * order.size <= 1000.0
            assert len(paper_gateway.orders) == 1
        finally:
            machine.stop()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
