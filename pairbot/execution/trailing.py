"""
Trailing policies for the internal stop after break-even.

static: the stop stays at entry once break-even is active.
step:   once price runs more than trigger beyond the stop, the stop moves to
        price - step (BUY) / price + step (SELL).

Both go through Pair.advance_internal_sl, which refuses unfavourable moves
and never lets the stop cross back past entry.
"""

from __future__ import annotations

from typing import Optional

from pairbot.config.config import Settings
from pairbot.domain.pair import Pair, Side


class TrailingPolicy:
    name = "base"

    def next_stop(self, pair: Pair, current: float) -> Optional[float]:
        """Proposed new internal stop, or None to leave it."""
        return None

    def update(self, pair: Pair, current: float) -> Optional[float]:
        """Apply the proposal. Returns the new stop if it moved."""
        proposed = self.next_stop(pair, current)
        if proposed is None:
            return None
        return proposed if pair.advance_internal_sl(proposed) else None


class StaticTrailing(TrailingPolicy):
    name = "static"


class StepTrailing(TrailingPolicy):
    name = "step"

    def __init__(self, trigger_distance: float, step_distance: float) -> None:
        self.trigger_distance = trigger_distance
        self.step_distance = step_distance

    def next_stop(self, pair: Pair, current: float) -> Optional[float]:
        if not (pair.break_even_active or pair.partial_closed):
            return None
        stop = pair.effective_sl
        if stop is None:
            return None
        if pair.side is Side.BUY:
            if current - stop > self.trigger_distance:
                return current - self.step_distance
        elif stop - current > self.trigger_distance:
            return current + self.step_distance
        return None


def build_trailing(settings: Settings) -> TrailingPolicy:
    if settings.trailing_mode == "step":
        return StepTrailing(settings.trail_trigger_distance, settings.trail_step_distance)
    return StaticTrailing()
