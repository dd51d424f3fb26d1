"""
Utility helpers.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterator

from pairbot.core.clock import Clock


class TtlSet:
    """
    Set of string keys that expire after ttl_ms.

    Bounded by maxlen as well: when full, the oldest key is evicted.
    Keys are kept in expiry order (a refresh moves the key to the end), so
    pruning only ever looks at the head.
    """

    def __init__(self, clock: Clock, ttl_ms: int, maxlen: int = 5000) -> None:
        self.clock = clock
        self.ttl_ms = ttl_ms
        self.maxlen = maxlen
        self._expiry: "OrderedDict[str, int]" = OrderedDict()

    def add(self, key: str) -> bool:
        """Add key (refreshing its expiry). Returns True if it was not present."""
        now = self.clock.now_ms()
        self._prune(now)
        fresh = key not in self._expiry
        if not fresh:
            self._expiry.move_to_end(key)
        elif len(self._expiry) >= self.maxlen:
            self._expiry.popitem(last=False)
        self._expiry[key] = now + self.ttl_ms
        return fresh

    def discard(self, key: str) -> None:
        self._expiry.pop(key, None)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        self._prune(self.clock.now_ms())
        return key in self._expiry

    def __len__(self) -> int:
        self._prune(self.clock.now_ms())
        return len(self._expiry)

    def __iter__(self) -> Iterator[str]:
        self._prune(self.clock.now_ms())
        return iter(list(self._expiry))

    def _prune(self, now_ms: int) -> None:
        while self._expiry:
            key, exp = next(iter(self._expiry.items()))
            if exp > now_ms:
                break
            del self._expiry[key]
