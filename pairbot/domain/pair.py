"""
Pair record: one trading intent implemented as two correlated broker positions.

The PARTIAL leg is taken off at a fraction of the TP distance, after which the
pair runs on the TRAILING leg with its internal stop at break-even.

State Diagram:

    CREATED ──> ENTRY_IN_PROGRESS ──┬──> ACTIVE ──> CLOSING ──> CLOSED
                                    │                  ▲
                                    └──────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @classmethod
    def parse(cls, raw: Any) -> Optional["Side"]:
        """Normalise broker/signal side strings ("POSITION_TYPE_SELL", "buy", ...)."""
        text = str(raw or "").upper()
        if "SELL" in text:
            return cls.SELL
        if "BUY" in text:
            return cls.BUY
        return None


class PairState(str, Enum):
    CREATED = "CREATED"                      # record exists, no broker interaction yet
    ENTRY_IN_PROGRESS = "ENTRY_IN_PROGRESS"  # LEG1 placed, LEG2 pending
    ACTIVE = "ACTIVE"                        # both legs confirmed
    CLOSING = "CLOSING"                      # close requested
    CLOSED = "CLOSED"                        # terminal, immutable


class ClosingReason(str, Enum):
    TP_HIT = "TP_HIT"
    STOP_LOSS = "STOP_LOSS"
    BREAK_EVEN = "BREAK_EVEN"
    MANUAL_CLOSE = "MANUAL_CLOSE"
    SYNC_CLOSED = "SYNC_CLOSED"
    ENTRY_TIMEOUT = "ENTRY_TIMEOUT"
    PAIR_CLOSED = "PAIR_CLOSED"


class LegRole(str, Enum):
    PARTIAL = "PARTIAL"
    TRAILING = "TRAILING"


@dataclass
class Leg:
    """One broker position slot within a pair. ticket is None until placed/adopted."""
    ticket: Optional[str]
    lot: float
    missing_count: int = 0


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: PairState
    to_state: PairState
    timestamp_ms: int
    reason: Optional[str] = None


@dataclass
class Pair:
    pair_id: str
    side: Side
    lot_each: float
    category: Optional[str] = None
    signal_id: Optional[str] = None

    entry_price: Optional[float] = None
    sl: Optional[float] = None
    tp: Optional[float] = None
    internal_sl: Optional[float] = None
    break_even_active: bool = False
    partial_closed: bool = False
    tight_sl_mode: bool = False

    partial: Leg = field(default=None)  # type: ignore[assignment]
    trailing: Leg = field(default=None)  # type: ignore[assignment]

    state: PairState = PairState.CREATED
    closing_reason: Optional[ClosingReason] = None

    opened_at_ms: int = 0
    entry_timestamp_ms: int = 0
    confirm_deadline_leg2_ms: Optional[int] = None
    leg2_placed_at_ms: Optional[int] = None
    closed_at_ms: Optional[int] = None
    leg2_attempted: bool = False
    first_sync_done: bool = False

    transitions: List[StateTransition] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.partial is None:
            self.partial = Leg(ticket=None, lot=self.lot_each)
        if self.trailing is None:
            self.trailing = Leg(ticket=None, lot=self.lot_each)
        if self.internal_sl is None:
            self.internal_sl = self.sl

    @property
    def total_lot(self) -> float:
        return round(self.lot_each * 2, 8)

    @property
    def is_live(self) -> bool:
        return self.state not in (PairState.CLOSING, PairState.CLOSED)

    @property
    def effective_sl(self) -> Optional[float]:
        return self.internal_sl if self.internal_sl is not None else self.sl

    def leg(self, role: LegRole) -> Leg:
        return self.partial if role is LegRole.PARTIAL else self.trailing

    def tickets(self) -> List[str]:
        """Non-null tickets currently held by this pair."""
        return [t for t in (self.partial.ticket, self.trailing.ticket) if t]

    def open_legs(self) -> List[tuple]:
        """(role, ticket, lot) for each leg that still has a ticket."""
        return [
            (role, leg.ticket, leg.lot)
            for role, leg in ((LegRole.PARTIAL, self.partial), (LegRole.TRAILING, self.trailing))
            if leg.ticket
        ]

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.opened_at_ms

    def mark_partial_gone(self) -> None:
        """PARTIAL leg no longer exists at the broker."""
        self.partial.ticket = None
        self.partial_closed = True

    def advance_internal_sl(self, new_sl: float) -> bool:
        """
        Move the internal stop, favourable direction only.

        BUY stops may only rise, SELL stops may only fall. Once break-even is
        active the stop never crosses back past entry. Returns True if moved.
        """
        current = self.internal_sl
        if current is not None:
            if self.side is Side.BUY and new_sl <= current:
                return False
            if self.side is Side.SELL and new_sl >= current:
                return False
        if self.break_even_active and self.entry_price is not None:
            if self.side is Side.BUY and new_sl < self.entry_price:
                return False
            if self.side is Side.SELL and new_sl > self.entry_price:
                return False
        self.internal_sl = new_sl
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "side": self.side.value,
            "category": self.category,
            "signal_id": self.signal_id,
            "state": self.state.value,
            "lot_each": self.lot_each,
            "total_lot": self.total_lot,
            "entry_price": self.entry_price,
            "sl": self.sl,
            "tp": self.tp,
            "internal_sl": self.internal_sl,
            "break_even_active": self.break_even_active,
            "partial_closed": self.partial_closed,
            "tight_sl_mode": self.tight_sl_mode,
            "trades": {
                "PARTIAL": {"ticket": self.partial.ticket, "lot": self.partial.lot, "missing": self.partial.missing_count},
                "TRAILING": {"ticket": self.trailing.ticket, "lot": self.trailing.lot, "missing": self.trailing.missing_count},
            },
            "closing_reason": self.closing_reason.value if self.closing_reason else None,
            "opened_at_ms": self.opened_at_ms,
            "confirm_deadline_leg2_ms": self.confirm_deadline_leg2_ms,
            "leg2_attempted": self.leg2_attempted,
            "closed_at_ms": self.closed_at_ms,
        }
