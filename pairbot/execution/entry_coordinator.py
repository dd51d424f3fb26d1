"""
EntryCoordinator: turns ENTRY signals into pairs and CLOSE signals into exits.

Admission of an ENTRY signal:
    1. duplicate signal id         -> DUPLICATE (ok, no side effects)
    2. entry lock held / an entry
       still unconfirmed           -> BUSY
    3. category slot taken         -> CATEGORY_FULL
    4. acquire the entry lock ("entry-processing")
    5. size the legs and fetch a reference price (PRICE_UNAVAILABLE)
    6. SL/TP from the indicator source, fixed fallback when not warm
    7. create the Pair, CREATED -> ENTRY_IN_PROGRESS, LEG2 deadline
    8. place LEG1, register its ticket and shield it as recent

The entry lock stays held on success. The reconciler releases it when the
pair reaches ACTIVE; the timeout guard releases it if the entry is abandoned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from pairbot.domain.pair import ClosingReason, Pair, PairState
from pairbot.execution.broker_gateway import BrokerError, PlaceResult
from pairbot.execution.finalizer import Finalizer
from pairbot.monitoring.notifier import NotificationEvent
from pairbot.signals.signal import Signal, SignalKind
from pairbot.strategy.sizing import IndicatorSource, compute_stop_levels, split_lot

if TYPE_CHECKING:
    from pairbot.core.context import EngineContext


class RejectionReason(str, Enum):
    DUPLICATE = "duplicate"
    BUSY = "busy"
    CATEGORY_FULL = "category_full"
    PRICE_UNAVAILABLE = "price_unavailable"
    LOT_TOO_SMALL = "lot_too_small"
    INVALID_SIGNAL = "invalid_signal"
    LEG1_FAILED = "leg1_failed"


@dataclass
class AdmissionResult:
    accepted: bool
    pair: Optional[Pair] = None
    rejection: Optional[RejectionReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        """A duplicate is answered as success: the first delivery already did the work."""
        return self.accepted or self.rejection is RejectionReason.DUPLICATE


@dataclass
class CloseSignalResult:
    ok: bool
    duplicate: bool = False
    closed: List[str] = field(default_factory=list)


class EntryCoordinator:

    def __init__(
        self,
        ctx: "EngineContext",
        finalizer: Finalizer,
        indicators: Optional[IndicatorSource] = None,
    ) -> None:
        self.ctx = ctx
        self.finalizer = finalizer
        self.indicators = indicators

    def _reject(self, sig: Signal, reason: RejectionReason, detail: Optional[str] = None) -> AdmissionResult:
        level = logging.DEBUG if reason is RejectionReason.DUPLICATE else logging.INFO
        self.ctx.log("entry_rejected", level=level, signal_id=sig.signal_id, reason=reason.value, detail=detail)
        self.ctx.metrics.entry_rejections.labels(symbol=self.ctx.symbol, reason=reason.value).inc()
        return AdmissionResult(accepted=False, rejection=reason, detail=detail)

    async def handle(self, sig: Signal):
        """Dispatch on signal kind."""
        self.ctx.metrics.signals_received.labels(symbol=self.ctx.symbol, kind=sig.kind.value).inc()
        if sig.kind is SignalKind.CLOSE:
            return await self.close_signal(sig)
        return await self.admit_signal(sig)

    async def admit_signal(self, sig: Signal) -> AdmissionResult:
        ctx = self.ctx
        settings = ctx.settings
        if sig.kind is not SignalKind.ENTRY:
            return self._reject(sig, RejectionReason.INVALID_SIGNAL, "not an entry signal")

        async with ctx.lock:
            if sig.signal_id in ctx.processed_signals:
                return self._reject(sig, RejectionReason.DUPLICATE)
            if ctx.entry_lock.is_locked() or ctx.entry_in_progress():
                return self._reject(sig, RejectionReason.BUSY, ctx.entry_lock.reason)
            if sig.category and ctx.store.count_category(sig.category) >= settings.max_per_category:
                return self._reject(sig, RejectionReason.CATEGORY_FULL, sig.category)
            lot_each = split_lot(settings.fixed_lot, settings.min_lot)
            if lot_each is None:
                return self._reject(sig, RejectionReason.LOT_TOO_SMALL, f"fixed_lot={settings.fixed_lot}")

            ctx.entry_lock.acquire("entry-processing")
            ctx.processed_signals.add(sig.signal_id)
            tight = any(
                p.side is sig.side.opposite and p.partial_closed and p.is_live
                for p in ctx.store.values()
            )

        quote = await ctx.broker.last_price()
        if quote is None:
            async with ctx.lock:
                ctx.entry_lock.release("entry-price-unavailable")
                ctx.processed_signals.discard(sig.signal_id)
            return self._reject(sig, RejectionReason.PRICE_UNAVAILABLE)

        entry_ref = quote.entry_for(sig.side)
        levels = compute_stop_levels(sig.side, entry_ref, settings, self.indicators)
        if levels.fallback:
            ctx.log("entry_fallback_sltp", signal_id=sig.signal_id, sl=levels.sl, tp=levels.tp)

        async with ctx.lock:
            now = ctx.clock.now_ms()
            pair = Pair(
                pair_id=ctx.new_pair_id(),
                side=sig.side,
                lot_each=lot_each,
                category=sig.category,
                signal_id=sig.signal_id,
                entry_price=entry_ref,
                sl=levels.sl,
                tp=levels.tp,
                tight_sl_mode=tight,
                opened_at_ms=now,
                entry_timestamp_ms=now,
                confirm_deadline_leg2_ms=now + settings.leg2_confirm_ms,
            )
            ctx.store.insert(pair)
            ctx.state_machine.transition(pair, PairState.ENTRY_IN_PROGRESS)
            ctx.inflight_placements += 1

        placed: Optional[PlaceResult] = None
        error: Optional[str] = None
        try:
            placed = await ctx.broker.place_market(sig.side, lot_each, levels.sl, levels.tp)
        except BrokerError as exc:
            error = str(exc)

        orphan: Optional[str] = None
        async with ctx.lock:
            ctx.inflight_placements -= 1
            if placed is None:
                self.finalizer.finalize_locked(pair.pair_id, ClosingReason.PAIR_CLOSED)
                ctx.entry_lock.release("entry-failed")
                ctx.processed_signals.discard(sig.signal_id)
            elif ctx.store.get(pair.pair_id) is not pair or pair.state is not PairState.ENTRY_IN_PROGRESS:
                orphan = placed.ticket
            else:
                ctx.registry.register(placed.ticket, pair.pair_id)
                ctx.registry.mark_recent(placed.ticket)
                pair.partial.ticket = placed.ticket
                if placed.price:
                    pair.entry_price = placed.price
                ctx.refresh_gauges()

        if placed is None:
            ctx.log("entry_leg1_failed", level=logging.WARNING, pair_id=pair.pair_id, error=error)
            return self._reject(sig, RejectionReason.LEG1_FAILED, error)
        if orphan is not None:
            # the pair was torn down while LEG1 was in flight
            ctx.log("entry_leg1_orphaned", level=logging.WARNING, pair_id=pair.pair_id, ticket=orphan)
            await ctx.broker.close_position(orphan)
            return self._reject(sig, RejectionReason.LEG1_FAILED, "pair closed during placement")

        ctx.metrics.pairs_opened.labels(symbol=ctx.symbol, side=pair.side.value).inc()
        ctx.log(
            "entry_leg1_placed",
            pair_id=pair.pair_id,
            side=pair.side.value,
            category=pair.category,
            ticket=pair.partial.ticket,
            lot_each=lot_each,
            entry_price=pair.entry_price,
            sl=pair.sl,
            tp=pair.tp,
            tight_sl_mode=pair.tight_sl_mode,
            leg2_deadline_ms=pair.confirm_deadline_leg2_ms,
        )
        ctx.notify(NotificationEvent.ENTRY_PLACED, pair=pair, price=pair.entry_price, sl=pair.sl, tp=pair.tp)
        return AdmissionResult(accepted=True, pair=pair)

    async def close_signal(self, sig: Signal) -> CloseSignalResult:
        """
        Close every live pair of the signal's category (or side, without one).

        Pairs already CLOSING are left to whoever claimed them.
        """
        ctx = self.ctx
        claimed = []
        async with ctx.lock:
            if sig.signal_id in ctx.processed_signals:
                ctx.log("close_signal_duplicate", level=logging.DEBUG, signal_id=sig.signal_id)
                return CloseSignalResult(ok=True, duplicate=True)
            ctx.processed_signals.add(sig.signal_id)

            targets = ctx.store.by_category(sig.category) if sig.category else ctx.store.by_side(sig.side)
            released_entry = False
            for pair in targets:
                was_entering = pair.state is PairState.ENTRY_IN_PROGRESS
                legs = self.finalizer.claim_locked(pair, ClosingReason.MANUAL_CLOSE)
                if legs is None:
                    continue
                claimed.append((pair.pair_id, legs))
                if was_entering and not released_entry:
                    released_entry = ctx.entry_lock.release("entry-closed-by-signal")

        ctx.log(
            "close_signal_received",
            signal_id=sig.signal_id,
            category=sig.category,
            side=sig.side.value,
            pairs=[pid for pid, _ in claimed],
        )
        closed = []
        for pair_id, legs in claimed:
            if await self.finalizer.complete_close(pair_id, legs, ClosingReason.MANUAL_CLOSE):
                closed.append(pair_id)
        return CloseSignalResult(ok=True, closed=closed)
