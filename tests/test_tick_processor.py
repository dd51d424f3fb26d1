"""
Tests for TickProcessor and the trailing policies.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from pairbot.config.config import Settings
from pairbot.core.context import EngineContext
from pairbot.domain.pair import ClosingReason, Pair, PairState, Side
from pairbot.execution.broker_gateway import Quote
from pairbot.execution.tick_processor import crossed_stop, crossed_tp, favourable_move
from pairbot.execution.trailing import StaticTrailing, StepTrailing, build_trailing
from pairbot.monitoring.notifier import NotificationEvent
from pairbot.orchestrator.engine import PairEngine


def _quote(bid, spread=0.2):
    return Quote(bid=bid, ask=round(bid + spread, 5))


class TestPriceHelpers:

    def test_favourable_move(self):
        assert favourable_move(Side.BUY, 2000.0, 2004.0) == 4.0
        assert favourable_move(Side.SELL, 2000.0, 2004.0) == -4.0

    def test_crossings(self):
        assert crossed_tp(Side.BUY, 2008.0, 2008.0)
        assert not crossed_tp(Side.SELL, 1992.1, 1992.0)
        assert crossed_stop(Side.BUY, 1996.0, 1996.0)
        assert crossed_stop(Side.SELL, 2004.1, 2004.0)


class TestExits:

    @pytest.mark.asyncio
    async def test_take_profit_buy(self, engine, ctx, broker, make_active_pair):
        pair = make_active_pair()
        tickets = pair.tickets()

        result = await engine.ticks.on_tick(_quote(2008.01))

        assert result.exits == [(pair.pair_id, "TP_HIT")]
        assert pair.state is PairState.CLOSED
        assert broker.closed_tickets() == tickets
        assert pair.pair_id not in ctx.store
        assert [e.event for e in ctx.notifier.events()] == [NotificationEvent.TP_HIT]

    @pytest.mark.asyncio
    async def test_take_profit_sell_uses_ask(self, engine, make_active_pair):
        pair = make_active_pair(side=Side.SELL, sl=2004.0, tp=1992.0, category="T_SELL")

        # ask 1992.1 is not through TP yet
        result = await engine.ticks.on_tick(Quote(bid=1991.9, ask=1992.1))
        assert result.exits == []

        result = await engine.ticks.on_tick(Quote(bid=1991.7, ask=1991.9))
        assert result.exits == [(pair.pair_id, "TP_HIT")]

    @pytest.mark.asyncio
    async def test_stop_loss(self, engine, ctx, broker, make_active_pair):
        pair = make_active_pair()

        result = await engine.ticks.on_tick(_quote(1995.9))

        assert result.exits == [(pair.pair_id, "STOP_LOSS")]
        assert pair.closing_reason is ClosingReason.STOP_LOSS
        assert len(broker.closed_tickets()) == 2
        assert [e.event for e in ctx.notifier.events()] == [NotificationEvent.SL_HIT]

    @pytest.mark.asyncio
    async def test_tp_checked_before_stop(self, engine, make_active_pair):
        pair = make_active_pair(sl=2010.0, tp=2008.0)
        result = await engine.ticks.on_tick(_quote(2009.0))
        assert result.exits == [(pair.pair_id, "TP_HIT")]

    @pytest.mark.asyncio
    async def test_young_pair_not_evaluated(self, engine, make_active_pair):
        pair = make_active_pair(age_ms=1_000)
        result = await engine.ticks.on_tick(_quote(2010.0))
        assert result.evaluated == 0
        assert pair.state is PairState.ACTIVE

    @pytest.mark.asyncio
    async def test_entering_pairs_ignored(self, engine, ctx, clock):
        res = await engine.submit_text("T BUY ENTRY", signal_id="sig-1")
        clock.advance(1_000)
        result = await engine.ticks.on_tick(_quote(2100.0))
        assert result.evaluated == 0
        assert res.pair.state is PairState.ENTRY_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_close_failure_still_finalizes(self, engine, ctx, broker, make_active_pair, log_events):
        """A leg that fails to close is logged; the pair is finalized and the sweep owns the leftover."""
        pair = make_active_pair()
        stuck = pair.trailing.ticket
        broker.close_errors[stuck] = "market closed"

        result = await engine.ticks.on_tick(_quote(2008.5))

        assert result.exits == [(pair.pair_id, "TP_HIT")]
        assert pair.pair_id not in ctx.store
        assert not ctx.registry.is_owned(stuck)
        assert log_events("pair_leg_close_failed")[0]["ticket"] == stuck

    @pytest.mark.asyncio
    async def test_malformed_broker_row_does_not_block_exits(self, engine, broker, make_active_pair):
        pair = make_active_pair()
        fetch = broker._fetch_positions

        async def listing_with_bad_row():
            rows = await fetch()
            return rows + [{"id": "X9", "type": "POSITION_TYPE_BUY", "volume": 0.02, "openPrice": "n/a"}]

        broker._fetch_positions = listing_with_bad_row

        result = await engine.ticks.on_tick(_quote(2008.5))

        assert result.exits == [(pair.pair_id, "TP_HIT")]
        assert pair.state is PairState.CLOSED

    @pytest.mark.asyncio
    async def test_reconcile_failure_on_tick_is_logged(self, engine, make_active_pair, log_events):
        pair = make_active_pair()
        engine.reconciler.run = AsyncMock(side_effect=RuntimeError("boom"))

        result = await engine.ticks.on_tick(_quote(2008.5))

        assert result.exits == [(pair.pair_id, "TP_HIT")]
        assert log_events("reconcile_on_tick_error")[0]["error"] == "RuntimeError: boom"


class TestPartialAndBreakEven:

    @pytest.mark.asyncio
    async def test_partial_taken(self, engine, ctx, broker, make_active_pair):
        pair = make_active_pair()
        partial = pair.partial.ticket

        result = await engine.ticks.on_tick(_quote(2004.10))

        assert result.partials == [pair.pair_id]
        assert broker.close_calls == [{"ticket": partial, "lot": 0.02}]
        assert pair.partial_closed
        assert pair.partial.ticket is None
        assert pair.break_even_active
        assert pair.internal_sl == 2000.0
        assert pair.state is PairState.ACTIVE
        assert [e.event for e in ctx.notifier.events()] == [NotificationEvent.PARTIAL_CLOSED]

    @pytest.mark.asyncio
    async def test_below_ratio_no_partial(self, engine, make_active_pair):
        pair = make_active_pair()
        result = await engine.ticks.on_tick(_quote(2003.9))
        assert result.partials == []
        assert not pair.partial_closed

    @pytest.mark.asyncio
    async def test_tight_mode_ratio(self, engine, make_active_pair):
        pair = make_active_pair()
        pair.tight_sl_mode = True
        result = await engine.ticks.on_tick(_quote(2002.5))
        assert result.partials == [pair.pair_id]

    @pytest.mark.asyncio
    async def test_partial_close_failure_retried(self, engine, broker, make_active_pair):
        pair = make_active_pair()
        broker.close_errors[pair.partial.ticket] = "trade disabled"

        result = await engine.ticks.on_tick(_quote(2004.5))
        assert result.partials == []
        assert not pair.partial_closed

        broker.close_errors.clear()
        result = await engine.ticks.on_tick(_quote(2004.6))
        assert result.partials == [pair.pair_id]

    @pytest.mark.asyncio
    async def test_break_even_exit(self, engine, ctx, broker, make_active_pair):
        pair = make_active_pair()
        trailing = pair.trailing.ticket
        await engine.ticks.on_tick(_quote(2004.10))

        result = await engine.ticks.on_tick(_quote(1999.90))

        assert result.exits == [(pair.pair_id, "BREAK_EVEN")]
        assert broker.closed_tickets()[-1] == trailing
        assert pair.closing_reason is ClosingReason.BREAK_EVEN
        assert ctx.notifier.events()[-1].event is NotificationEvent.BREAK_EVEN

    @pytest.mark.asyncio
    async def test_stop_never_moves_back(self, engine, make_active_pair):
        pair = make_active_pair()
        await engine.ticks.on_tick(_quote(2004.10))
        seen = [pair.internal_sl]
        for bid in (2003.0, 2001.0, 2005.0, 2000.5):
            await engine.ticks.on_tick(_quote(bid))
            seen.append(pair.internal_sl)
        assert seen == sorted(seen)


class TestTrailing:

    def _runner(self, side=Side.BUY):
        pair = Pair(pair_id="p-1", side=side, lot_each=0.02, entry_price=2000.0,
                    sl=1996.0 if side is Side.BUY else 2004.0)
        pair.mark_partial_gone()
        pair.break_even_active = True
        pair.internal_sl = 2000.0
        return pair

    def test_static_never_moves(self):
        pair = self._runner()
        assert StaticTrailing().update(pair, 2100.0) is None
        assert pair.internal_sl == 2000.0

    def test_step_buy(self):
        trailing = StepTrailing(trigger_distance=20.0, step_distance=10.0)
        pair = self._runner()
        assert trailing.update(pair, 2015.0) is None
        assert trailing.update(pair, 2025.0) == 2015.0
        assert pair.internal_sl == 2015.0
        # price falls back: stop holds
        assert trailing.update(pair, 2010.0) is None
        assert pair.internal_sl == 2015.0

    def test_step_sell(self):
        trailing = StepTrailing(trigger_distance=20.0, step_distance=10.0)
        pair = self._runner(Side.SELL)
        assert trailing.update(pair, 1975.0) == 1985.0

    def test_step_waits_for_break_even(self):
        trailing = StepTrailing(trigger_distance=20.0, step_distance=10.0)
        pair = Pair(pair_id="p-1", side=Side.BUY, lot_each=0.02, entry_price=2000.0, sl=1996.0)
        assert trailing.update(pair, 2050.0) is None

    def test_build_trailing(self):
        assert isinstance(build_trailing(Settings()), StaticTrailing)
        step = build_trailing(Settings(trailing_mode="step"))
        assert isinstance(step, StepTrailing)
        assert step.trigger_distance == 20.0

    @pytest.mark.asyncio
    async def test_step_mode_in_tick_loop(self, broker, clock):
        ctx = EngineContext.create(Settings(fixed_lot=0.04, trailing_mode="step"), broker, clock=clock)
        engine = PairEngine(ctx)
        t1 = broker.open_position(Side.BUY, 0.02, age_ms=10_000)
        pair = Pair(pair_id="p-1", side=Side.BUY, lot_each=0.02, entry_price=2000.0, sl=1996.0, tp=2050.0,
                    opened_at_ms=clock.now_ms() - 10_000, leg2_placed_at_ms=clock.now_ms() - 10_000)
        pair.trailing.ticket = t1
        pair.mark_partial_gone()
        pair.break_even_active = True
        pair.internal_sl = 2000.0
        ctx.store.insert(pair)
        ctx.state_machine.transition(pair, PairState.ENTRY_IN_PROGRESS)
        ctx.state_machine.transition(pair, PairState.ACTIVE)
        ctx.registry.register(t1, pair.pair_id)

        result = await engine.ticks.on_tick(_quote(2025.0))

        assert result.trailed == ["p-1"]
        assert pair.internal_sl == 2015.0


class TestCoalescing:

    @pytest.mark.asyncio
    async def test_latest_tick_wins(self, engine, broker, make_active_pair):
        pair = make_active_pair()
        gate = asyncio.Event()
        fetch = broker._fetch_positions

        async def slow_fetch():
            await gate.wait()
            return await fetch()

        broker._fetch_positions = slow_fetch
        first = asyncio.create_task(engine.ticks.on_tick(_quote(2001.0)))
        await asyncio.sleep(0)

        assert await engine.ticks.on_tick(_quote(2004.5)) is None
        assert await engine.ticks.on_tick(_quote(2008.5)) is None
        assert engine.ticks.coalesced == 1

        gate.set()
        result = await first

        # the 2004.5 tick was dropped; the TP tick was processed
        assert result.exits == [(pair.pair_id, "TP_HIT")]
        assert not pair.partial_closed
