"""
Domain model: the Pair record and its enums.
"""

from pairbot.domain.pair import (
    ClosingReason,
    Leg,
    LegRole,
    Pair,
    PairState,
    Side,
    StateTransition,
)

__all__ = [
    "ClosingReason",
    "Leg",
    "LegRole",
    "Pair",
    "PairState",
    "Side",
    "StateTransition",
]
