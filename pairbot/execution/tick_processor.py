"""
TickProcessor: price-driven exits for ACTIVE pairs.

For each tick and each ACTIVE pair older than min_trade_age_ms, with
current = bid for BUY / ask for SELL:

    1. partial + break-even: progress toward TP >= partial ratio closes the
       PARTIAL leg, activates break-even and pins the internal stop at entry
    2. take-profit: current through TP -> TP_HIT
    3. stop: current through the internal stop -> BREAK_EVEN when break-even
       is active and the runner is still open, STOP_LOSS otherwise
    4. trailing: the configured policy may advance the internal stop
    5. both tickets gone -> PAIR_CLOSED

An exit that fires in the same tick as the partial target takes precedence
and closes every remaining leg. TP is checked before the stop.

Ticks are coalesced: a tick arriving while the previous one is still being
processed replaces any tick already waiting, and is handled right after.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

from pairbot.domain.pair import ClosingReason, Pair, PairState, Side
from pairbot.execution.broker_gateway import Quote
from pairbot.execution.finalizer import Finalizer, LegSnapshot
from pairbot.execution.trailing import StaticTrailing, TrailingPolicy
from pairbot.monitoring.notifier import NotificationEvent

if TYPE_CHECKING:
    from pairbot.core.context import EngineContext
    from pairbot.execution.reconciliation_service import Reconciler


@dataclass
class PartialOrder:
    pair_id: str
    ticket: str
    lot: float


@dataclass
class TickResult:
    """What one processed tick did."""
    evaluated: int = 0
    partials: List[str] = field(default_factory=list)
    exits: List[Tuple[str, str]] = field(default_factory=list)   # (pair_id, reason)
    trailed: List[str] = field(default_factory=list)


def favourable_move(side: Side, entry: float, current: float) -> float:
    return current - entry if side is Side.BUY else entry - current


def crossed_tp(side: Side, current: float, tp: float) -> bool:
    return current >= tp if side is Side.BUY else current <= tp


def crossed_stop(side: Side, current: float, stop: float) -> bool:
    return current <= stop if side is Side.BUY else current >= stop


class TickProcessor:

    def __init__(
        self,
        ctx: "EngineContext",
        finalizer: Finalizer,
        trailing: Optional[TrailingPolicy] = None,
        reconciler: Optional["Reconciler"] = None,
    ) -> None:
        self.ctx = ctx
        self.finalizer = finalizer
        self.trailing = trailing or StaticTrailing()
        self.reconciler = reconciler
        self._busy = False
        self._pending: Optional[Quote] = None
        self._coalesced = 0

    @property
    def coalesced(self) -> int:
        return self._coalesced

    async def on_tick(self, quote: Quote) -> Optional[TickResult]:
        """
        Process a tick, or queue it behind the one in progress.

        Returns the result of the last tick processed by this call, or None
        if the tick was handed to the call already running.
        """
        if self._busy:
            if self._pending is not None:
                self._coalesced += 1
            self._pending = quote
            return None
        self._busy = True
        try:
            result = await self._process(quote)
            while self._pending is not None:
                quote, self._pending = self._pending, None
                result = await self._process(quote)
            return result
        finally:
            self._busy = False

    def partial_ratio(self, pair: Pair) -> float:
        settings = self.ctx.settings
        return settings.tight_partial_ratio if pair.tight_sl_mode else settings.partial_ratio

    def _partial_due(self, pair: Pair, current: float) -> bool:
        if pair.partial_closed or not pair.partial.ticket or not pair.tp or not pair.entry_price:
            return False
        total = abs(pair.tp - pair.entry_price)
        moved = favourable_move(pair.side, pair.entry_price, current)
        if moved <= 0 or total <= 0:
            return False
        return moved / total >= self.partial_ratio(pair)

    def _exit_reason(self, pair: Pair, current: float) -> Optional[ClosingReason]:
        if pair.tp is not None and crossed_tp(pair.side, current, pair.tp):
            return ClosingReason.TP_HIT
        stop = pair.effective_sl
        if stop is not None and crossed_stop(pair.side, current, stop):
            if pair.break_even_active and pair.trailing.ticket:
                return ClosingReason.BREAK_EVEN
            return ClosingReason.STOP_LOSS
        if not pair.partial.ticket and not pair.trailing.ticket:
            return ClosingReason.PAIR_CLOSED
        return None

    async def _process(self, quote: Quote) -> TickResult:
        ctx = self.ctx
        if self.reconciler is not None and ctx.settings.reconcile_on_tick:
            try:
                await self.reconciler.run()
            except Exception as exc:
                # exits below must still run on this tick
                ctx.log("reconcile_on_tick_error", level=logging.ERROR, error=f"{type(exc).__name__}: {exc}")

        result = TickResult()
        exits: List[Tuple[str, List[LegSnapshot], ClosingReason, float]] = []
        partials: List[Tuple[PartialOrder, float]] = []

        async with ctx.lock:
            now = ctx.clock.now_ms()
            for pair in ctx.store.by_state(PairState.ACTIVE):
                if pair.age_ms(now) < ctx.settings.min_trade_age_ms:
                    continue
                current = quote.price_for(pair.side)
                result.evaluated += 1

                reason = self._exit_reason(pair, current)
                if reason is not None:
                    legs = self.finalizer.claim_locked(pair, reason)
                    if legs is not None:
                        exits.append((pair.pair_id, legs, reason, current))
                    continue

                if self._partial_due(pair, current):
                    partials.append((PartialOrder(pair.pair_id, pair.partial.ticket, pair.partial.lot), current))
                    continue

                old_stop = pair.internal_sl
                if self.trailing.update(pair, current) is not None:
                    result.trailed.append(pair.pair_id)
                    ctx.log(
                        "trailing_advanced",
                        pair_id=pair.pair_id,
                        old_sl=old_stop,
                        new_sl=pair.internal_sl,
                        price=current,
                    )

        ctx.metrics.ticks_processed.labels(symbol=ctx.symbol).inc()

        for order, current in partials:
            if await self._take_partial(order, current):
                result.partials.append(order.pair_id)

        for pair_id, legs, reason, current in exits:
            ctx.log("pair_exit", pair_id=pair_id, reason=reason.value, price=current)
            if await self.finalizer.complete_close(pair_id, legs, reason, price=current):
                result.exits.append((pair_id, reason.value))
        return result

    async def _take_partial(self, order: PartialOrder, current: float) -> bool:
        """Close the PARTIAL leg and move the pair to break-even. Retried next tick on failure."""
        ctx = self.ctx
        res = await ctx.broker.close_position(order.ticket, order.lot)
        if not res.ok:
            ctx.log("partial_close_failed", level=logging.WARNING, pair_id=order.pair_id, ticket=order.ticket, error=res.error)
            return False

        async with ctx.lock:
            pair = ctx.store.get(order.pair_id)
            if pair is None or pair.state is not PairState.ACTIVE or pair.partial.ticket not in (order.ticket, None):
                return False
            pair.mark_partial_gone()
            pair.break_even_active = True
            if pair.entry_price is not None:
                pair.advance_internal_sl(pair.entry_price)

        ctx.metrics.partials_taken.labels(symbol=ctx.symbol).inc()
        ctx.log(
            "partial_closed",
            pair_id=pair.pair_id,
            ticket=order.ticket,
            lot=order.lot,
            price=current,
            break_even=pair.internal_sl,
        )
        ctx.notify(NotificationEvent.PARTIAL_CLOSED, pair=pair, price=current, break_even=pair.internal_sl)
        return True
