"""
Core utilities package.

Clock, TTL-bounded sets and the per-symbol engine context.
"""

from pairbot.core.clock import Clock, ManualClock
from pairbot.core.utils import TtlSet

__all__ = [
    "Clock",
    "ManualClock",
    "TtlSet",
]
