"""
OwnershipRegistry: which pair owns which broker ticket.

Two structures:
- ticket -> pair_id (with a reverse index so a pair's entries can be dropped
  in one call at finalization)
- recent tickets: tickets placed in the last ttl window. The reconciler's
  external-position sweep never touches them, even if ownership has not been
  recorded yet.
"""

from __future__ import annotations

from typing import Dict, Optional, Set

from pairbot.core.clock import Clock
from pairbot.core.utils import TtlSet


class OwnershipRegistry:

    def __init__(self, clock: Clock, recent_ttl_ms: int = 15_000) -> None:
        self._ticket_to_pair: Dict[str, str] = {}
        self._pair_to_tickets: Dict[str, Set[str]] = {}
        self._recent = TtlSet(clock, ttl_ms=recent_ttl_ms)

    def register(self, ticket: str, pair_id: str) -> None:
        ticket = str(ticket)
        previous = self._ticket_to_pair.get(ticket)
        if previous is not None and previous != pair_id:
            raise ValueError(f"ticket {ticket} already owned by {previous}")
        self._ticket_to_pair[ticket] = pair_id
        self._pair_to_tickets.setdefault(pair_id, set()).add(ticket)

    def unregister(self, ticket: str) -> Optional[str]:
        ticket = str(ticket)
        pair_id = self._ticket_to_pair.pop(ticket, None)
        if pair_id is not None:
            tickets = self._pair_to_tickets.get(pair_id)
            if tickets is not None:
                tickets.discard(ticket)
                if not tickets:
                    del self._pair_to_tickets[pair_id]
        return pair_id

    def release_pair(self, pair_id: str) -> Set[str]:
        """Drop every ticket owned by pair_id. Returns the released tickets."""
        tickets = self._pair_to_tickets.pop(pair_id, set())
        for t in tickets:
            self._ticket_to_pair.pop(t, None)
        return tickets

    def is_owned(self, ticket: str) -> bool:
        return str(ticket) in self._ticket_to_pair

    def owner_of(self, ticket: str) -> Optional[str]:
        return self._ticket_to_pair.get(str(ticket))

    def tickets_of(self, pair_id: str) -> Set[str]:
        return set(self._pair_to_tickets.get(pair_id, set()))

    def mark_recent(self, ticket: str) -> None:
        self._recent.add(str(ticket))

    def is_recent(self, ticket: str) -> bool:
        return str(ticket) in self._recent

    def __len__(self) -> int:
        return len(self._ticket_to_pair)
