"""
Clock & timer source.

All engine components read time through a Clock so deadlines (LEG2 confirm,
entry timeout, grace windows, TTLs) can be driven deterministically in tests.

Time is epoch milliseconds: broker position open times are wall-clock values
and are compared directly against entry timestamps.
"""

from __future__ import annotations

import asyncio
import time


class Clock:
    """Wall-clock time source backed by time.time() and asyncio.sleep()."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock(Clock):
    """
    Clock whose time only moves when told to.

    sleep() advances the clock instead of blocking, then yields to the loop
    once so other tasks can observe the new time.
    """

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now_ms = start_ms

    def now_ms(self) -> int:
        return self._now_ms

    def advance(self, ms: int) -> int:
        self._now_ms += int(ms)
        return self._now_ms

    def set(self, now_ms: int) -> None:
        self._now_ms = int(now_ms)

    async def sleep(self, seconds: float) -> None:
        self.advance(int(seconds * 1000))
        await asyncio.sleep(0)
