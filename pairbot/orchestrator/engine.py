"""
PairEngine: wires the per-symbol components and runs their schedules.

Loops:
    tick loop       - every tick_interval_sec: fetch the quote, feed the
                      candle window, run freeze detection, hand the tick to
                      the TickProcessor
    reconcile loop  - runs the Reconciler then the entry-timeout guard; it
                      sleeps reconcile_interval_sec or until the nearest LEG2
                      confirm deadline / entry timeout, whichever is sooner

Signals enter through submit_signal / submit_text at any time.

stop() cancels the loops and flushes pending notifications. An order
placement already in flight is never cancelled by the engine; whatever it
leaves at the broker is picked up by the next start.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pairbot.core.context import EngineContext
from pairbot.domain.pair import PairState
from pairbot.execution.broker_gateway import Quote
from pairbot.execution.entry_coordinator import AdmissionResult, CloseSignalResult, EntryCoordinator
from pairbot.execution.finalizer import Finalizer
from pairbot.execution.reconciliation_service import ReconcileResult, Reconciler, TimeoutReapResult
from pairbot.execution.tick_processor import TickProcessor, TickResult
from pairbot.execution.trailing import TrailingPolicy, build_trailing
from pairbot.monitoring.notifier import NotificationEvent
from pairbot.signals.signal import Signal, parse_signal_string
from pairbot.strategy.sizing import CandleIndicators, IndicatorSource

MIN_WAKEUP_SEC = 0.05


class MarketFreezeDetector:
    """
    Counts consecutive ticks with an unchanged price.

    More than `threshold` stagnant ticks marks the market frozen; the first
    tick with a different price un-freezes it.
    """

    FROZEN = "frozen"
    RESUMED = "resumed"

    def __init__(self, threshold: int = 60) -> None:
        self.threshold = threshold
        self.stagnant_ticks = 0
        self.frozen = False
        self.frozen_since_ms: Optional[int] = None
        self._last_price: Optional[float] = None

    def observe(self, price: float, now_ms: int) -> Optional[str]:
        """Feed one tick price. Returns FROZEN / RESUMED on a change of state."""
        last, self._last_price = self._last_price, price
        if last is None:
            return None
        if price != last:
            self.stagnant_ticks = 0
            if self.frozen:
                self.frozen = False
                self.frozen_since_ms = None
                return self.RESUMED
            return None
        self.stagnant_ticks += 1
        if self.stagnant_ticks > self.threshold and not self.frozen:
            self.frozen = True
            self.frozen_since_ms = now_ms
            return self.FROZEN
        return None


@dataclass
class ReconcileCycle:
    reconcile: Optional[ReconcileResult]
    timeouts: TimeoutReapResult


class PairEngine:

    def __init__(
        self,
        ctx: EngineContext,
        indicators: Optional[IndicatorSource] = None,
        trailing: Optional[TrailingPolicy] = None,
    ) -> None:
        self.ctx = ctx
        self.indicators = indicators
        self.finalizer = Finalizer(ctx)
        self.coordinator = EntryCoordinator(ctx, self.finalizer, indicators=indicators)
        self.reconciler = Reconciler(ctx, self.finalizer)
        self.ticks = TickProcessor(
            ctx,
            self.finalizer,
            trailing=trailing or build_trailing(ctx.settings),
            reconciler=self.reconciler,
        )
        self.freeze = MarketFreezeDetector(ctx.settings.freeze_tick_threshold)
        self.last_quote: Optional[Quote] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ---- signals ---------------------------------------------------------------

    async def submit_signal(self, sig: Signal) -> Union[AdmissionResult, CloseSignalResult]:
        return await self.coordinator.handle(sig)

    async def submit_text(self, text: str, signal_id: Optional[str] = None) -> Union[AdmissionResult, CloseSignalResult]:
        """Parse "T BUY ENTRY" style text and submit it. Raises InvalidSignal on bad text."""
        return await self.submit_signal(parse_signal_string(text, signal_id=signal_id))

    # ---- single iterations -------------------------------------------------------

    async def tick_once(self) -> Optional[TickResult]:
        ctx = self.ctx
        quote = await ctx.broker.last_price()
        if quote is None:
            ctx.log("tick_price_unavailable", level=logging.WARNING)
            return None
        self.last_quote = quote
        if isinstance(self.indicators, CandleIndicators):
            closed = self.indicators.on_price(quote.bid, ctx.clock.now_ms())
            if closed is not None:
                ctx.log("candle_closed", level=logging.DEBUG, high=closed.high, low=closed.low, close=closed.close)

        change = self.freeze.observe(quote.bid, ctx.clock.now_ms())
        if change == MarketFreezeDetector.FROZEN:
            ctx.metrics.market_frozen.labels(symbol=ctx.symbol).set(1)
            ctx.log("market_frozen", level=logging.WARNING, stagnant_ticks=self.freeze.stagnant_ticks, price=quote.bid)
            ctx.notify(NotificationEvent.MARKET_FROZEN, price=quote.bid)
        elif change == MarketFreezeDetector.RESUMED:
            ctx.metrics.market_frozen.labels(symbol=ctx.symbol).set(0)
            ctx.log("market_resumed", price=quote.bid)
            ctx.notify(NotificationEvent.MARKET_RESUMED, price=quote.bid)

        if self.freeze.frozen:
            ctx.log("tick_skipped_market_frozen", level=logging.DEBUG, since_ms=self.freeze.frozen_since_ms)
            return None
        return await self.ticks.on_tick(quote)

    async def reconcile_once(self) -> ReconcileCycle:
        result = await self.reconciler.run()
        timeouts = await self.reconciler.reap_entry_timeouts()
        self.ctx.refresh_gauges()
        return ReconcileCycle(reconcile=result, timeouts=timeouts)

    def next_reconcile_delay(self) -> float:
        """Seconds until the next reconcile: the interval, or sooner for a pending deadline."""
        ctx = self.ctx
        delay_ms = ctx.settings.reconcile_interval_sec * 1000
        now = ctx.clock.now_ms()
        for pair in ctx.store.by_state(PairState.ENTRY_IN_PROGRESS):
            deadlines = [pair.entry_timestamp_ms + ctx.settings.entry_timeout_ms + 1]
            if not pair.leg2_attempted and pair.confirm_deadline_leg2_ms is not None:
                deadlines.append(pair.confirm_deadline_leg2_ms)
            for deadline in deadlines:
                if deadline > now:
                    delay_ms = min(delay_ms, deadline - now)
        return max(delay_ms / 1000, MIN_WAKEUP_SEC)

    # ---- loops -------------------------------------------------------------------

    async def _loop(self, name: str, body: Callable[[], Awaitable[Any]], delay: Callable[[], float]) -> None:
        ctx = self.ctx
        while self._running:
            try:
                await body()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                ctx.metrics.loop_errors.labels(symbol=ctx.symbol, loop=name).inc()
                ctx.log(f"{name}_loop_error", level=logging.ERROR, error=str(exc), error_type=type(exc).__name__)
            await ctx.clock.sleep(delay())

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        settings = self.ctx.settings
        self._tasks = [
            asyncio.create_task(
                self._loop("tick", self.tick_once, lambda: settings.tick_interval_sec),
                name=f"pairbot-tick-{self.ctx.symbol}",
            ),
            asyncio.create_task(
                self._loop("reconcile", self.reconcile_once, self.next_reconcile_delay),
                name=f"pairbot-reconcile-{self.ctx.symbol}",
            ),
        ]
        self.ctx.log(
            "engine_started",
            tick_interval_sec=settings.tick_interval_sec,
            reconcile_interval_sec=settings.reconcile_interval_sec,
            trailing=self.ticks.trailing.name,
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.ctx.notifier.close()
        self.ctx.log("engine_stopped", open_pairs=len(self.ctx.store))

    async def wait(self) -> None:
        """Block until the loops end (stop() or cancellation)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        ctx = self.ctx
        return {
            "symbol": ctx.symbol,
            "running": self._running,
            "pairs": [p.to_dict() for p in ctx.store.values()],
            "owned_tickets": len(ctx.registry),
            "entry_lock": {
                "locked": ctx.entry_lock.is_locked(),
                "reason": ctx.entry_lock.reason,
                "held_ms": ctx.entry_lock.held_for_ms,
            },
            "market_frozen": self.freeze.frozen,
            "last_quote": {"bid": self.last_quote.bid, "ask": self.last_quote.ask} if self.last_quote else None,
            "state_machine": ctx.state_machine.get_stats(),
            "reconcile_skipped": self.reconciler.skipped_runs,
            "ticks_coalesced": self.ticks.coalesced,
        }
