"""Momentum signal accumulator.

Counts consecutive ticks on which the reference average and the trade price
diverge in the direction that matters for the current phase:

1. Waiting:  average below price (bullish) -> buy signal
2. Entering: average above price (reversal) -> cancel the open buy
3. Entered:  average above price (reversal) -> forced exit

A stop-loss check runs ahead of the counter whenever a position is held.
"""

import logging
from typing import Optional

from ..config import Config
from ..models.types import Phase, PriceSnapshot, Trigger
from .price_tracker import PriceTracker

logger = logging.getLogger(__name__)


COUNTED_PHASES = (Phase.WAITING, Phase.ENTERING, Phase.ENTERED)


class SignalAccumulator:
    """Phase-scoped signal strength counter.

    Reads prices from the tracker and the phase from the machine; acts only
    through the machine's request methods.
    """

    def __init__(self, config: Config, tracker: PriceTracker, machine):
        self.config = config
        self.signal_config = config.signal
        self.tracker = tracker
        self.machine = machine

        self.signal_strength = 0
        self.triggers_fired = 0
        self.last_trigger: Optional[Trigger] = None

    def evaluate(self) -> Optional[Trigger]:
        """Run one tick.

        Returns:
            The trigger fired on this tick, or None
        """
        snapshot = self.tracker.current()
        if not snapshot.is_complete:
            return None

        if self._stop_loss_hit(snapshot):
            if self.machine.request_exit(
                f"stop-loss: price {snapshot.last_trade_price:.2f} below floor"
            ):
                return self._fired(Trigger.STOP_LOSS)
            return None

        phase = self.machine.phase
        if phase not in COUNTED_PHASES:
            return None

        if self._condition_holds(phase, snapshot):
            self.signal_strength += 1
        else:
            self.signal_strength = 0

        if self.signal_strength < self.signal_config.threshold:
            return None

        self.signal_strength = 0
        if phase == Phase.WAITING:
            if self.machine.offer_buy_signal():
                return self._fired(Trigger.BUY_SIGNAL)
        elif phase == Phase.ENTERING:
            if self.machine.request_cancel():
                return self._fired(Trigger.CANCEL_REQUEST)
        else:
            if self.machine.request_exit("momentum reversed"):
                return self._fired(Trigger.FORCED_EXIT)
        return None

    def _condition_holds(self, phase: Phase, snapshot: PriceSnapshot) -> bool:
        average = snapshot.reference_average.price
        price = snapshot.last_trade_price
        if phase == Phase.WAITING:
            return average < price
        return average > price

    def _stop_loss_hit(self, snapshot: PriceSnapshot) -> bool:
        """Price fell below the last settled price by stop_loss_pct while holding."""
        cycle = self.machine.cycle
        if not cycle.holding or not cycle.settled_orders:
            return False
        last_price = cycle.last_settled_price
        loss_floor = last_price - last_price * self.signal_config.stop_loss_pct
        return snapshot.last_trade_price < loss_floor

    def _fired(self, trigger: Trigger) -> Trigger:
        self.triggers_fired += 1
        self.last_trigger = trigger
        logger.info(f"Signal fired: {trigger.name}")
        return trigger

    def reset(self) -> None:
        self.signal_strength = 0
        self.triggers_fired = 0
        self.last_trigger = None
