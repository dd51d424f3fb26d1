"""
PairStore: in-process mapping from pair id to Pair record.

The store is the single owner of live Pair records. It does no locking of
its own; callers mutate it while holding the engine's per-symbol lock.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from pairbot.domain.pair import Pair, PairState, Side


class PairStore:

    def __init__(self) -> None:
        self._pairs: Dict[str, Pair] = {}

    def insert(self, pair: Pair) -> None:
        if pair.pair_id in self._pairs:
            raise KeyError(f"pair {pair.pair_id} already stored")
        self._pairs[pair.pair_id] = pair

    def get(self, pair_id: str) -> Optional[Pair]:
        return self._pairs.get(pair_id)

    def remove(self, pair_id: str) -> Optional[Pair]:
        return self._pairs.pop(pair_id, None)

    def values(self) -> List[Pair]:
        """Snapshot list, safe to iterate while the store is mutated."""
        return list(self._pairs.values())

    def ids(self) -> List[str]:
        return list(self._pairs.keys())

    def __contains__(self, pair_id: object) -> bool:
        return pair_id in self._pairs

    def __len__(self) -> int:
        return len(self._pairs)

    def __iter__(self) -> Iterator[Pair]:
        return iter(self.values())

    def by_state(self, state: PairState) -> List[Pair]:
        return [p for p in self._pairs.values() if p.state is state]

    def by_category(self, category: str) -> List[Pair]:
        return [p for p in self._pairs.values() if p.category == category]

    def by_side(self, side: Side) -> List[Pair]:
        return [p for p in self._pairs.values() if p.side is side]

    def count_category(self, category: str) -> int:
        """
        Pairs that still occupy a category slot.

        A pair stops counting once its partial is taken (the runner is
        risk-free at break-even) or once either leg is gone.
        """
        return sum(
            1
            for p in self._pairs.values()
            if p.category == category
            and not p.partial_closed
            and p.partial.ticket
            and p.trailing.ticket
        )

    def owned_tickets(self) -> Dict[str, str]:
        """ticket -> pair_id for every ticket held in any pair's legs."""
        out: Dict[str, str] = {}
        for p in self._pairs.values():
            for t in p.tickets():
                out[t] = p.pair_id
        return out
