"""
Tests for the Finalizer: idempotent teardown and the claim/close/finish exit path.
"""

import asyncio

import pytest

from pairbot.domain.pair import ClosingReason, Pair, PairState, Side
from pairbot.execution.finalizer import REASON_EVENTS
from pairbot.monitoring.notifier import NotificationEvent


class TestFinalize:

    @pytest.mark.asyncio
    async def test_teardown(self, engine, ctx, make_active_pair):
        pair = make_active_pair()

        assert await engine.finalizer.finalize(pair.pair_id, ClosingReason.SYNC_CLOSED, price=2001.0)

        assert pair.state is PairState.CLOSED
        assert pair.closed_at_ms is not None
        assert pair.pair_id not in ctx.store
        assert len(ctx.registry) == 0
        events = ctx.notifier.events()
        assert [e.event for e in events] == [NotificationEvent.SYNC_CLOSED]
        assert events[0].reason == "SYNC_CLOSED"
        assert events[0].price == 2001.0

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, ctx, make_active_pair):
        """Second finalize of the same pair does nothing."""
        pair = make_active_pair()

        assert await engine.finalizer.finalize(pair.pair_id, ClosingReason.SYNC_CLOSED)
        assert not await engine.finalizer.finalize(pair.pair_id, ClosingReason.SYNC_CLOSED)
        assert not await engine.finalizer.finalize(pair.pair_id, ClosingReason.TP_HIT)

        assert len(ctx.notifier.events()) == 1
        assert ctx.state_machine.get_stats()["closed"] == 1
        assert ctx.metrics.registry.get_sample_value(
            "pairs_closed_total", {"symbol": "XAUUSDm", "reason": "SYNC_CLOSED"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_unknown_pair(self, engine):
        assert not await engine.finalizer.finalize("nope", ClosingReason.SYNC_CLOSED)

    @pytest.mark.asyncio
    async def test_claimed_reason_wins(self, engine, ctx, make_active_pair):
        """A pair already CLOSING keeps the reason it was claimed with."""
        pair = make_active_pair()
        async with ctx.lock:
            engine.finalizer.claim_locked(pair, ClosingReason.TP_HIT)

        await engine.finalizer.finalize(pair.pair_id, ClosingReason.SYNC_CLOSED)
        assert pair.closing_reason is ClosingReason.TP_HIT
        assert ctx.notifier.events()[0].event is NotificationEvent.TP_HIT

    @pytest.mark.asyncio
    async def test_created_pair_dropped_silently(self, engine, ctx):
        pair = Pair(pair_id="p-created", side=Side.BUY, lot_each=0.02)
        ctx.store.insert(pair)

        assert not await engine.finalizer.finalize(pair.pair_id, ClosingReason.PAIR_CLOSED)
        assert "p-created" not in ctx.store
        assert ctx.notifier.events() == []

    def test_every_reason_has_an_event(self):
        assert set(REASON_EVENTS) == set(ClosingReason)


class TestExitPath:

    @pytest.mark.asyncio
    async def test_close_pair(self, engine, ctx, broker, make_active_pair):
        pair = make_active_pair()
        tickets = pair.tickets()

        assert await engine.finalizer.close_pair(pair.pair_id, ClosingReason.MANUAL_CLOSE, price=2002.0)
        assert broker.closed_tickets() == tickets
        assert broker.close_calls[0]["lot"] == 0.02
        assert pair.partial.ticket is None
        assert pair.trailing.ticket is None
        assert pair.state is PairState.CLOSED

    @pytest.mark.asyncio
    async def test_claim_only_once(self, engine, ctx, make_active_pair):
        pair = make_active_pair()
        async with ctx.lock:
            first = engine.finalizer.claim_locked(pair, ClosingReason.TP_HIT)
            second = engine.finalizer.claim_locked(pair, ClosingReason.STOP_LOSS)
        assert len(first) == 2
        assert second is None

    @pytest.mark.asyncio
    async def test_racing_exits_close_legs_once(self, engine, ctx, broker, make_active_pair):
        """Two exit paths racing on the same pair close each leg once."""
        pair = make_active_pair()

        results = await asyncio.gather(
            engine.finalizer.close_pair(pair.pair_id, ClosingReason.MANUAL_CLOSE),
            engine.finalizer.close_pair(pair.pair_id, ClosingReason.TP_HIT),
        )

        assert sorted(results) == [False, True]
        assert len(broker.close_calls) == 2
        assert len(ctx.notifier.events()) == 1

    @pytest.mark.asyncio
    async def test_close_pair_on_missing_pair(self, engine, broker):
        assert not await engine.finalizer.close_pair("nope", ClosingReason.MANUAL_CLOSE)
        assert broker.close_calls == []
