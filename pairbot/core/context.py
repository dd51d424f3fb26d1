"""
EngineContext: everything one symbol's engine shares, passed explicitly.

One context per symbol/account. The asyncio.Lock guards the Pair Store, the
Ownership Registry and the Entry Lock; critical sections are short and no
broker call is ever awaited while it is held.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from pairbot.config.config import Settings
from pairbot.core.clock import Clock
from pairbot.core.utils import TtlSet
from pairbot.domain.pair import Pair, PairState
from pairbot.execution.broker_gateway import BrokerGateway
from pairbot.execution.entry_lock import EntryLock
from pairbot.execution.pair_state_machine import PairStateMachine
from pairbot.monitoring.metrics import EngineMetrics
from pairbot.monitoring.notifier import NotificationEvent, NotificationHook, PairEvent
from pairbot.state.ownership_registry import OwnershipRegistry
from pairbot.state.pair_store import PairStore

log = logging.getLogger("pairbot")


@dataclass
class EngineContext:
    settings: Settings
    clock: Clock
    broker: BrokerGateway
    store: PairStore
    registry: OwnershipRegistry
    entry_lock: EntryLock
    state_machine: PairStateMachine
    notifier: NotificationHook
    metrics: EngineMetrics
    processed_signals: TtlSet
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # placements awaiting a broker answer; the external sweep stands down meanwhile
    inflight_placements: int = 0

    @classmethod
    def create(
        cls,
        settings: Settings,
        broker: BrokerGateway,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationHook] = None,
        metrics: Optional[EngineMetrics] = None,
    ) -> "EngineContext":
        clock = clock or Clock()
        return cls(
            settings=settings,
            clock=clock,
            broker=broker,
            store=PairStore(),
            registry=OwnershipRegistry(clock, recent_ttl_ms=settings.recent_ticket_ttl_ms),
            entry_lock=EntryLock(clock, timeout_ms=settings.entry_lock_timeout_ms),
            state_machine=PairStateMachine(clock),
            notifier=notifier or NotificationHook(enabled=settings.notify_enabled),
            metrics=metrics or EngineMetrics(),
            processed_signals=TtlSet(clock, ttl_ms=settings.signal_ttl_ms, maxlen=10_000),
        )

    @property
    def symbol(self) -> str:
        return self.settings.symbol

    def new_pair_id(self) -> str:
        return f"{self.symbol}-{self.clock.now_ms()}-{uuid.uuid4().hex[:6]}"

    def log(self, event: str, level: int = logging.INFO, **data: Any) -> None:
        payload = {"event": event, "symbol": self.symbol, **data}
        log.log(level, json.dumps(payload, default=str))

    def notify(
        self,
        event: NotificationEvent,
        pair: Optional[Pair] = None,
        reason: Optional[str] = None,
        price: Optional[float] = None,
        **details: Any,
    ) -> None:
        self.notifier.emit(PairEvent(
            event=event,
            symbol=self.symbol,
            pair_id=pair.pair_id if pair else None,
            side=pair.side.value if pair else None,
            reason=reason,
            price=price,
            timestamp_ms=self.clock.now_ms(),
            details=details,
        ))

    def entry_in_progress(self) -> bool:
        return bool(self.store.by_state(PairState.ENTRY_IN_PROGRESS))

    def refresh_gauges(self) -> None:
        self.metrics.open_pairs.labels(symbol=self.symbol).set(len(self.store))
        self.metrics.entry_lock_held.labels(symbol=self.symbol).set(1 if self.entry_lock.is_locked() else 0)
