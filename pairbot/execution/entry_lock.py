"""
EntryLock: process-wide gate serialising new entries.

Held from the moment a signal is admitted until the pair reaches ACTIVE (or
the entry is abandoned). A holder that never releases is evicted after
timeout_ms: is_locked() auto-releases and reports unlocked.

Single-threaded asyncio usage; no internal locks.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from pairbot.core.clock import Clock

log = logging.getLogger("pairbot")


class EntryLock:

    def __init__(
        self,
        clock: Clock,
        timeout_ms: int = 30_000,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.clock = clock
        self.timeout_ms = timeout_ms
        self._locked = False
        self._locked_at_ms: Optional[int] = None
        self._reason: Optional[str] = None
        self._force_releases = 0
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}))

    @property
    def reason(self) -> Optional[str]:
        return self._reason if self._locked else None

    @property
    def held_for_ms(self) -> int:
        if not self._locked or self._locked_at_ms is None:
            return 0
        return self.clock.now_ms() - self._locked_at_ms

    @property
    def force_releases(self) -> int:
        return self._force_releases

    def is_locked(self) -> bool:
        """True while held. Auto-releases a holder older than timeout_ms."""
        if not self._locked:
            return False
        if self.held_for_ms > self.timeout_ms:
            self._log_event(
                "entry_lock_timeout",
                level=logging.WARNING,
                held_ms=self.held_for_ms,
                holder=self._reason,
            )
            self._force_releases += 1
            self.release("timeout-force")
            return False
        return True

    def acquire(self, reason: str) -> bool:
        """Take the lock. Returns False (and changes nothing) if already held."""
        if self.is_locked():
            self._log_event(
                "entry_lock_busy",
                requested_by=reason,
                holder=self._reason,
                held_ms=self.held_for_ms,
            )
            return False
        self._locked = True
        self._locked_at_ms = self.clock.now_ms()
        self._reason = reason
        self._log_event("entry_lock_acquired", reason=reason)
        return True

    def release(self, reason: str) -> bool:
        """Release the lock. Returns False if it was not held."""
        if not self._locked:
            return False
        self._log_event(
            "entry_lock_released",
            reason=reason,
            holder=self._reason,
            held_ms=self.held_for_ms,
        )
        self._locked = False
        self._locked_at_ms = None
        self._reason = None
        return True
