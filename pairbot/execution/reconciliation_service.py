"""
Reconciler: re-derives pair state from the broker's position list.

Each run takes one broker snapshot and works in two phases.

Phase 1 - external-position sweep:
    Any listed position that no pair owns, that is not a recently placed
    ticket, that does not look like a pending LEG2 mirror and that is older
    than external_min_age_ms is closed. A position without an open time is
    treated as old unless close_unknown_age is off. The sweep stands down
    while a placement is awaiting the broker's answer.

Phase 2 - per-pair reconciliation:
    ENTRY_IN_PROGRESS: adopt a matching LEG2 from the snapshot, or once the
    confirm deadline has passed place LEG2 explicitly (once). Success moves
    the pair to ACTIVE and releases the entry lock ("entry-success"); a
    failed placement releases it with "entry-failed" and leaves the pair for
    the timeout guard.
    ACTIVE: a leg missing from missing_confirmations consecutive snapshots is
    marked gone, after the grace windows; a leg that reappears resets its
    count. Both gone -> finalize SYNC_CLOSED.

Entry-timeout guard (reap_entry_timeouts): pairs stuck in ENTRY_IN_PROGRESS
longer than entry_timeout_ms are closed and removed; the entry lock is
released with "entry-timeout-abandon".

Concurrency:
    One run at a time; a run requested while another is in flight is skipped.
    Decisions are taken under the engine lock, broker calls are made outside
    it, and results are applied under the lock only if the pair is still in
    the state the decision was based on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from pairbot.domain.pair import ClosingReason, LegRole, Pair, PairState
from pairbot.execution.broker_gateway import BrokerError, BrokerPosition, PlaceResult
from pairbot.execution.finalizer import ClosedPair, Finalizer, LegSnapshot

if TYPE_CHECKING:
    from pairbot.core.context import EngineContext


@dataclass
class ReconcileResult:
    """Result of one reconciler run."""
    success: bool
    positions_seen: int = 0
    external_closed: List[str] = field(default_factory=list)
    external_close_failed: List[str] = field(default_factory=list)
    sweep_skipped: bool = False
    adopted: Dict[str, str] = field(default_factory=dict)        # pair_id -> ticket
    fallback_placed: Dict[str, str] = field(default_factory=dict)
    fallback_failed: List[str] = field(default_factory=list)
    legs_marked_gone: List[Tuple[str, str]] = field(default_factory=list)
    finalized: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TimeoutReapResult:
    reaped: List[str] = field(default_factory=list)
    lock_released: bool = False


class Reconciler:

    def __init__(self, ctx: "EngineContext", finalizer: Finalizer) -> None:
        self.ctx = ctx
        self.finalizer = finalizer
        self._running = False
        self._skipped = 0
        self._runs = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def skipped_runs(self) -> int:
        return self._skipped

    async def run(self) -> Optional[ReconcileResult]:
        """One reconciliation pass. Returns None if a pass was already in flight."""
        if self._running:
            self._skipped += 1
            self.ctx.log("reconcile_skipped_in_flight", level=logging.DEBUG)
            return None
        self._running = True
        started = self.ctx.clock.now_ms()
        try:
            result = await self._run_once()
        finally:
            self._running = False
        self._runs += 1
        self.ctx.metrics.reconcile_runs.labels(
            symbol=self.ctx.symbol, result="ok" if result.success else "error"
        ).inc()
        self.ctx.metrics.reconcile_duration_ms.labels(symbol=self.ctx.symbol).observe(
            self.ctx.clock.now_ms() - started
        )
        return result

    async def _run_once(self) -> ReconcileResult:
        try:
            positions = await self.ctx.broker.list_positions()
        except BrokerError as exc:
            self.ctx.log("reconcile_fetch_error", level=logging.WARNING, error=str(exc))
            return ReconcileResult(success=False, error=str(exc))

        result = ReconcileResult(success=True, positions_seen=len(positions))
        await self._sweep_external(positions, result)
        await self._reconcile_pairs(positions, result)
        if result.external_closed or result.adopted or result.fallback_placed or result.finalized:
            self.ctx.log(
                "reconcile_complete",
                positions=result.positions_seen,
                external_closed=result.external_closed,
                adopted=result.adopted,
                fallback_placed=result.fallback_placed,
                finalized=result.finalized,
            )
        return result

    # ---- phase 1 ------------------------------------------------------------------

    def _is_shielded(self, pos: BrokerPosition, owned: Dict[str, str], entering: List[Pair], now: int) -> bool:
        ctx = self.ctx
        if pos.ticket in owned or ctx.registry.is_owned(pos.ticket) or ctx.registry.is_recent(pos.ticket):
            return True
        if pos.open_time_ms is None:
            if not ctx.settings.close_unknown_age:
                return True
        elif now - pos.open_time_ms < ctx.settings.external_min_age_ms:
            return True
        return any(self._matches_leg2(pair, pos) for pair in entering)

    async def _sweep_external(self, positions: List[BrokerPosition], result: ReconcileResult) -> None:
        ctx = self.ctx
        async with ctx.lock:
            if ctx.inflight_placements:
                result.sweep_skipped = True
                return
            now = ctx.clock.now_ms()
            owned = ctx.store.owned_tickets()
            entering = ctx.store.by_state(PairState.ENTRY_IN_PROGRESS)
            victims = [p for p in positions if not self._is_shielded(p, owned, entering, now)]

        for pos in victims:
            res = await ctx.broker.close_position(pos.ticket)
            if res.ok:
                result.external_closed.append(pos.ticket)
                ctx.metrics.external_closed.labels(symbol=ctx.symbol).inc()
                ctx.log(
                    "external_position_closed",
                    ticket=pos.ticket,
                    side=pos.side.value if pos.side else None,
                    volume=pos.volume,
                    open_time_ms=pos.open_time_ms,
                    already_closed=res.already_closed,
                )
            else:
                result.external_close_failed.append(pos.ticket)
                ctx.log("external_close_failed", level=logging.WARNING, ticket=pos.ticket, error=res.error)

    # ---- phase 2 ------------------------------------------------------------------

    def _matches_leg2(self, pair: Pair, pos: BrokerPosition) -> bool:
        """Hard filters for a LEG2 candidate of an entering pair."""
        settings = self.ctx.settings
        if pos.ticket == pair.partial.ticket:
            return False
        owner = self.ctx.registry.owner_of(pos.ticket)
        if owner is not None and owner != pair.pair_id:
            return False
        if pos.side is not pair.side:
            return False
        if abs(pos.volume - pair.lot_each) >= settings.lot_tolerance:
            return False
        if pos.open_time_ms is not None:
            if abs(pos.open_time_ms - pair.entry_timestamp_ms) > settings.leg2_match_window_ms:
                return False
        return True

    def _find_leg2(self, pair: Pair, positions: List[BrokerPosition]) -> Optional[BrokerPosition]:
        candidates = [p for p in positions if self._matches_leg2(pair, p)]
        if not candidates:
            return None

        def rank(pos: BrokerPosition):
            mine = self.ctx.registry.owner_of(pos.ticket) == pair.pair_id
            dt = abs(pos.open_time_ms - pair.entry_timestamp_ms) if pos.open_time_ms is not None else float("inf")
            return (0 if mine else 1, dt)

        return min(candidates, key=rank)

    def _activate_locked(self, pair: Pair, ticket: str, how: str) -> None:
        ctx = self.ctx
        ctx.registry.register(ticket, pair.pair_id)
        ctx.registry.mark_recent(ticket)
        pair.trailing.ticket = ticket
        pair.leg2_placed_at_ms = ctx.clock.now_ms()
        ctx.state_machine.transition(pair, PairState.ACTIVE)
        ctx.entry_lock.release("entry-success")
        ctx.refresh_gauges()
        ctx.log(
            "leg2_adopted" if how == "adopted" else "leg2_placed",
            pair_id=pair.pair_id,
            leg1=pair.partial.ticket,
            leg2=ticket,
            confirm_ms=ctx.clock.now_ms() - pair.entry_timestamp_ms,
        )

    def _leg_confirmed_gone(self, pair: Pair, role: LegRole, live: set) -> bool:
        """Count one more listing without this leg. True once the miss streak is long enough."""
        leg = pair.leg(role)
        if leg.ticket in live:
            if leg.missing_count:
                self.ctx.log("leg_reappeared", pair_id=pair.pair_id, leg=role.value, ticket=leg.ticket,
                             misses=leg.missing_count)
            leg.missing_count = 0
            return False
        leg.missing_count += 1
        needed = self.ctx.settings.missing_confirmations
        if leg.missing_count < needed:
            self.ctx.log("leg_missing_pending", level=logging.DEBUG, pair_id=pair.pair_id, leg=role.value,
                         ticket=leg.ticket, misses=leg.missing_count, needed=needed)
            return False
        return True

    def _validate_active_locked(
        self, pair: Pair, live: set, now: int, result: ReconcileResult
    ) -> Optional[ClosedPair]:
        settings = self.ctx.settings
        if not pair.first_sync_done:
            if now - pair.opened_at_ms < settings.sync_grace_ms:
                return None
            pair.first_sync_done = True

        ticket = pair.partial.ticket
        if ticket and self._leg_confirmed_gone(pair, LegRole.PARTIAL, live):
            result.legs_marked_gone.append((pair.pair_id, ticket))
            self.ctx.log("leg_missing", pair_id=pair.pair_id, leg="PARTIAL", ticket=ticket,
                         misses=pair.partial.missing_count)
            pair.mark_partial_gone()

        ticket = pair.trailing.ticket
        if ticket:
            placed_at = pair.leg2_placed_at_ms
            if ticket not in live and placed_at is not None and now - placed_at < settings.leg2_grace_ms:
                self.ctx.log("leg_missing_deferred", level=logging.DEBUG, pair_id=pair.pair_id, ticket=ticket)
            elif self._leg_confirmed_gone(pair, LegRole.TRAILING, live):
                result.legs_marked_gone.append((pair.pair_id, ticket))
                self.ctx.log("leg_missing", pair_id=pair.pair_id, leg="TRAILING", ticket=ticket,
                             misses=pair.trailing.missing_count)
                pair.trailing.ticket = None

        if not pair.partial.ticket and not pair.trailing.ticket:
            closed = self.finalizer.finalize_locked(pair.pair_id, ClosingReason.SYNC_CLOSED)
            if closed is not None:
                result.finalized.append(pair.pair_id)
            return closed
        return None

    async def _reconcile_pairs(self, positions: List[BrokerPosition], result: ReconcileResult) -> None:
        ctx = self.ctx
        live = {p.ticket for p in positions}
        fallbacks: List[Pair] = []
        closed_pairs: List[ClosedPair] = []

        async with ctx.lock:
            now = ctx.clock.now_ms()
            for pair in ctx.store.values():
                if pair.state is PairState.ENTRY_IN_PROGRESS:
                    if not pair.partial.ticket:
                        continue  # LEG1 still in flight
                    cand = self._find_leg2(pair, positions)
                    if cand is not None:
                        self._activate_locked(pair, cand.ticket, "adopted")
                        result.adopted[pair.pair_id] = cand.ticket
                        ctx.metrics.leg2_adopted.labels(symbol=ctx.symbol).inc()
                    elif (
                        pair.confirm_deadline_leg2_ms is not None
                        and now >= pair.confirm_deadline_leg2_ms
                        and not pair.leg2_attempted
                    ):
                        pair.leg2_attempted = True
                        ctx.inflight_placements += 1
                        fallbacks.append(pair)
                elif pair.state is PairState.ACTIVE:
                    closed = self._validate_active_locked(pair, live, now, result)
                    if closed is not None:
                        closed_pairs.append(closed)

        for closed in closed_pairs:
            self.finalizer.announce(closed)

        for pair in fallbacks:
            await self._place_leg2(pair, result)

    async def _place_leg2(self, pair: Pair, result: ReconcileResult) -> None:
        ctx = self.ctx
        ctx.log("leg2_fallback_start", pair_id=pair.pair_id, side=pair.side.value, lot=pair.lot_each)
        placed: Optional[PlaceResult] = None
        error: Optional[str] = None
        try:
            placed = await ctx.broker.place_market(pair.side, pair.lot_each, pair.sl, pair.tp)
        except BrokerError as exc:
            error = str(exc)

        orphan: Optional[str] = None
        async with ctx.lock:
            ctx.inflight_placements -= 1
            current = ctx.store.get(pair.pair_id)
            if placed is None:
                result.fallback_failed.append(pair.pair_id)
                ctx.metrics.leg2_fallback.labels(symbol=ctx.symbol, result="failed").inc()
                if current is pair and pair.state is PairState.ENTRY_IN_PROGRESS:
                    ctx.entry_lock.release("entry-failed")
            elif current is not pair or pair.state is not PairState.ENTRY_IN_PROGRESS:
                orphan = placed.ticket
            else:
                self._activate_locked(pair, placed.ticket, "placed")
                result.fallback_placed[pair.pair_id] = placed.ticket
                ctx.metrics.leg2_fallback.labels(symbol=ctx.symbol, result="placed").inc()

        if placed is None:
            ctx.log("leg2_fallback_failed", level=logging.WARNING, pair_id=pair.pair_id, error=error)
        elif orphan is not None:
            ctx.log("leg2_orphan_closed", level=logging.WARNING, pair_id=pair.pair_id, ticket=orphan)
            await ctx.broker.close_position(orphan)

    # ---- entry-timeout guard --------------------------------------------------------

    async def reap_entry_timeouts(self) -> TimeoutReapResult:
        ctx = self.ctx
        out = TimeoutReapResult()
        claimed: List[Tuple[str, List[LegSnapshot]]] = []
        async with ctx.lock:
            now = ctx.clock.now_ms()
            for pair in ctx.store.by_state(PairState.ENTRY_IN_PROGRESS):
                age = now - pair.entry_timestamp_ms
                if age <= ctx.settings.entry_timeout_ms:
                    continue
                legs = self.finalizer.claim_locked(pair, ClosingReason.ENTRY_TIMEOUT)
                if legs is None:
                    continue
                claimed.append((pair.pair_id, legs))
                ctx.log(
                    "entry_timeout",
                    level=logging.WARNING,
                    pair_id=pair.pair_id,
                    age_ms=age,
                    leg2_attempted=pair.leg2_attempted,
                    tickets=[t for _, t, _ in legs],
                )
            if claimed:
                # abandoned entries give the lock up before their legs are closed
                out.lock_released = ctx.entry_lock.release("entry-timeout-abandon")

        for pair_id, legs in claimed:
            if await self.finalizer.complete_close(pair_id, legs, ClosingReason.ENTRY_TIMEOUT):
                out.reaped.append(pair_id)
        return out
