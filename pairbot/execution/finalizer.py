"""
Finalizer: idempotent teardown of a pair, plus the shared exit path.

Teardown order for finalize(pair_id, reason):
    1. absent or CLOSED -> no-op
    2. CLOSING (if not already) -> CLOSED
    3. release every ticket the pair owns in the Ownership Registry
    4. delete the pair from the Pair Store
    5. emit the closing notification (after the engine lock is released)

Exit path (TP / SL / break-even / manual close / entry timeout):
    claim   - under the lock, move the pair to CLOSING and snapshot its legs
    close   - outside the lock, close each leg through the broker
    finish  - under the lock, finalize

A claimed pair cannot be claimed again, so two event sources racing to exit
the same pair close its legs once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from pairbot.domain.pair import ClosingReason, LegRole, Pair, PairState
from pairbot.execution.broker_gateway import CloseResult
from pairbot.monitoring.notifier import NotificationEvent

if TYPE_CHECKING:
    from pairbot.core.context import EngineContext

REASON_EVENTS: Dict[ClosingReason, NotificationEvent] = {
    ClosingReason.TP_HIT: NotificationEvent.TP_HIT,
    ClosingReason.STOP_LOSS: NotificationEvent.SL_HIT,
    ClosingReason.BREAK_EVEN: NotificationEvent.BREAK_EVEN,
    ClosingReason.MANUAL_CLOSE: NotificationEvent.MANUAL_CLOSE,
    ClosingReason.SYNC_CLOSED: NotificationEvent.SYNC_CLOSED,
    ClosingReason.ENTRY_TIMEOUT: NotificationEvent.ENTRY_TIMEOUT,
    ClosingReason.PAIR_CLOSED: NotificationEvent.PAIR_CLOSED,
}

LegSnapshot = Tuple[LegRole, str, float]


@dataclass
class ClosedPair:
    """What finalize removed. Used to notify once the lock is released."""
    pair: Pair
    reason: ClosingReason
    released_tickets: List[str] = field(default_factory=list)


class Finalizer:

    def __init__(self, ctx: "EngineContext") -> None:
        self.ctx = ctx

    # ---- teardown -------------------------------------------------------------

    def finalize_locked(self, pair_id: str, reason: ClosingReason) -> Optional[ClosedPair]:
        """Teardown with the engine lock held. Returns None if there was nothing to do."""
        ctx = self.ctx
        pair = ctx.store.get(pair_id)
        if pair is None or pair.state is PairState.CLOSED:
            return None

        if pair.state is not PairState.CLOSING:
            if not ctx.state_machine.begin_closing(pair, reason):
                # CREATED never reaches the broker; drop it without a CLOSED record
                ctx.store.remove(pair_id)
                ctx.registry.release_pair(pair_id)
                return None
        final_reason = pair.closing_reason or reason
        ctx.state_machine.transition(pair, PairState.CLOSED)

        released = sorted(ctx.registry.release_pair(pair_id))
        ctx.store.remove(pair_id)

        ctx.metrics.pairs_closed.labels(symbol=ctx.symbol, reason=final_reason.value).inc()
        ctx.refresh_gauges()
        ctx.log(
            "pair_finalized",
            pair_id=pair_id,
            reason=final_reason.value,
            released_tickets=released,
            lifetime_ms=(pair.closed_at_ms or 0) - pair.opened_at_ms,
        )
        return ClosedPair(pair=pair, reason=final_reason, released_tickets=released)

    def announce(self, closed: Optional[ClosedPair], price: Optional[float] = None) -> None:
        if closed is None:
            return
        self.ctx.notify(
            REASON_EVENTS.get(closed.reason, NotificationEvent.PAIR_CLOSED),
            pair=closed.pair,
            reason=closed.reason.value,
            price=price,
            entry_price=closed.pair.entry_price,
            sl=closed.pair.effective_sl,
            tp=closed.pair.tp,
        )

    async def finalize(self, pair_id: str, reason: ClosingReason, price: Optional[float] = None) -> bool:
        """Idempotent: only the first call for a pair tears it down."""
        async with self.ctx.lock:
            closed = self.finalize_locked(pair_id, reason)
        self.announce(closed, price)
        return closed is not None

    # ---- exit path ------------------------------------------------------------

    def claim_locked(self, pair: Pair, reason: ClosingReason) -> Optional[List[LegSnapshot]]:
        """Move a live pair to CLOSING. Returns its open legs, or None if already claimed."""
        if not pair.is_live or pair.pair_id not in self.ctx.store:
            return None
        if not self.ctx.state_machine.begin_closing(pair, reason):
            return None
        return pair.open_legs()

    async def close_legs(self, pair_id: str, legs: List[LegSnapshot]) -> List[CloseResult]:
        """Close each leg; failures are logged and left for the external sweep."""
        results: List[CloseResult] = []
        for role, ticket, lot in legs:
            res = await self.ctx.broker.close_position(ticket, lot)
            if not res.ok:
                self.ctx.log(
                    "pair_leg_close_failed",
                    level=logging.WARNING,
                    pair_id=pair_id,
                    leg=role.value,
                    ticket=ticket,
                    error=res.error,
                )
            results.append(res)
        return results

    async def complete_close(
        self,
        pair_id: str,
        legs: List[LegSnapshot],
        reason: ClosingReason,
        price: Optional[float] = None,
    ) -> bool:
        """Close the legs of a claimed pair, then finalize it."""
        results = await self.close_legs(pair_id, legs)
        async with self.ctx.lock:
            pair = self.ctx.store.get(pair_id)
            if pair is not None:
                for (role, ticket, _), res in zip(legs, results):
                    leg = pair.leg(role)
                    if res.ok and leg.ticket == ticket:
                        leg.ticket = None
            closed = self.finalize_locked(pair_id, reason)
        self.announce(closed, price)
        return closed is not None

    async def close_pair(self, pair_id: str, reason: ClosingReason, price: Optional[float] = None) -> bool:
        """Claim, close and finalize in one call. False if another path got there first."""
        async with self.ctx.lock:
            pair = self.ctx.store.get(pair_id)
            legs = self.claim_locked(pair, reason) if pair is not None else None
        if legs is None:
            return False
        return await self.complete_close(pair_id, legs, reason, price)
