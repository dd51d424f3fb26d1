"""
Notification hook for pair lifecycle events.

The engine emits PairEvents through a NotificationHook. Delivery is
best-effort: each event is handed to the configured Notifier on a background
task, failures are logged and never retried, and the engine never waits on a
slow webhook.

Notifiers:
- LogNotifier: writes the event to the "pairbot" logger
- WebhookNotifier: POSTs to an HTTP webhook via httpx (generic JSON body, or
  Telegram sendMessage format)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

import httpx

log = logging.getLogger("pairbot")


class NotificationEvent(str, Enum):
    ENTRY_PLACED = "entry_placed"
    PARTIAL_CLOSED = "partial_closed"
    BREAK_EVEN = "break_even"
    SL_HIT = "sl_hit"
    TP_HIT = "tp_hit"
    SYNC_CLOSED = "sync_closed"
    ENTRY_TIMEOUT = "entry_timeout"
    MANUAL_CLOSE = "manual_close"
    PAIR_CLOSED = "pair_closed"
    MARKET_FROZEN = "market_frozen"
    MARKET_RESUMED = "market_resumed"


_TITLES = {
    NotificationEvent.ENTRY_PLACED: "Entry placed",
    NotificationEvent.PARTIAL_CLOSED: "Partial closed, stop at break-even",
    NotificationEvent.BREAK_EVEN: "Closed at break-even",
    NotificationEvent.SL_HIT: "Stop loss hit",
    NotificationEvent.TP_HIT: "Take profit hit",
    NotificationEvent.SYNC_CLOSED: "Closed at broker",
    NotificationEvent.ENTRY_TIMEOUT: "Entry abandoned (timeout)",
    NotificationEvent.MANUAL_CLOSE: "Closed by signal",
    NotificationEvent.PAIR_CLOSED: "Pair closed",
    NotificationEvent.MARKET_FROZEN: "Market frozen",
    NotificationEvent.MARKET_RESUMED: "Market resumed",
}


@dataclass
class PairEvent:
    """One notification. pair_id is None for market-wide events."""
    event: NotificationEvent
    symbol: str
    pair_id: Optional[str] = None
    side: Optional[str] = None
    reason: Optional[str] = None
    price: Optional[float] = None
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return _TITLES.get(self.event, self.event.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "symbol": self.symbol,
            "pair_id": self.pair_id,
            "side": self.side,
            "reason": self.reason,
            "price": self.price,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
        }

    def to_text(self) -> str:
        parts = [f"{self.title} | {self.symbol}"]
        if self.side:
            parts.append(self.side)
        if self.pair_id:
            parts.append(self.pair_id)
        if self.price is not None:
            parts.append(f"@ {self.price}")
        if self.reason:
            parts.append(f"({self.reason})")
        return " ".join(parts)


class Notifier:
    """Delivery backend. emit() returns True when the event was delivered."""

    async def emit(self, event: PairEvent) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LogNotifier(Notifier):

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def emit(self, event: PairEvent) -> bool:
        payload = {**event.to_dict(), "event": "notify", "notify_event": event.event.value}
        log.log(self.level, json.dumps(payload, default=str))
        return True


class WebhookFormatter:
    """Formats events for the supported webhook types."""

    @staticmethod
    def format_generic(event: PairEvent, chat_id: Optional[str]) -> Dict[str, Any]:
        return event.to_dict()

    @staticmethod
    def format_telegram(event: PairEvent, chat_id: Optional[str]) -> Dict[str, Any]:
        return {"chat_id": chat_id, "text": event.to_text(), "disable_notification": False}


class WebhookNotifier(Notifier):
    """
    POST each event to a webhook.

    One attempt per event. Non-2xx answers and transport errors are logged
    and reported as False.
    """

    def __init__(
        self,
        url: str,
        webhook_type: str = "generic",
        chat_id: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if webhook_type not in ("generic", "telegram"):
            raise ValueError(f"unsupported webhook type: {webhook_type}")
        self.url = url
        self.webhook_type = webhook_type
        self.chat_id = chat_id
        # If a client is passed in we don't close it in close()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True

    def format(self, event: PairEvent) -> Dict[str, Any]:
        if self.webhook_type == "telegram":
            return WebhookFormatter.format_telegram(event, self.chat_id)
        return WebhookFormatter.format_generic(event, self.chat_id)

    async def emit(self, event: PairEvent) -> bool:
        try:
            resp = await self.client.post(self.url, json=self.format(event))
        except httpx.HTTPError as exc:
            log.warning(json.dumps({
                "event": "notify_failed",
                "notify_event": event.event.value,
                "error": str(exc) or type(exc).__name__,
            }))
            return False
        if resp.status_code >= 300:
            log.warning(json.dumps({
                "event": "notify_failed",
                "notify_event": event.event.value,
                "status": resp.status_code,
            }))
            return False
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class NotificationHook:
    """
    Best-effort, non-blocking front for a Notifier.

    emit() records the event and schedules delivery on a background task.
    The most recent events are kept in history for status output and tests.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        enabled: bool = True,
        history_size: int = 200,
    ) -> None:
        self.notifier = notifier or LogNotifier()
        self.enabled = enabled
        self.history: Deque[PairEvent] = deque(maxlen=history_size)
        self._tasks: Set[asyncio.Task] = set()
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def events(self, kind: Optional[NotificationEvent] = None) -> List[PairEvent]:
        return [e for e in self.history if kind is None or e.event is kind]

    def emit(self, event: PairEvent) -> None:
        self.history.append(event)
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug(json.dumps({"event": "notify_no_loop", "notify_event": event.event.value}))
            return
        task = loop.create_task(self._deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: PairEvent) -> None:
        try:
            ok = await self.notifier.emit(event)
        except Exception as exc:
            ok = False
            log.warning(json.dumps({
                "event": "notify_error",
                "notify_event": event.event.value,
                "error": str(exc),
            }))
        if not ok:
            self._failures += 1

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.notifier.close()
