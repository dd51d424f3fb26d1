"""
Pair State Machine - validated lifecycle transitions for Pair records.

Allowed edges:

    CREATED            -> ENTRY_IN_PROGRESS
    ENTRY_IN_PROGRESS  -> ACTIVE | CLOSING
    ACTIVE             -> CLOSING
    CLOSING            -> CLOSED
    CLOSED             -> (terminal)

Any other attempt is rejected and logged; the Pair is left unchanged.
Entering CLOSING records the closing reason, entering CLOSED stamps closed_at.

Thread-safety: callers hold the engine lock while transitioning. This class
provides logical consistency, not synchronization.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from pairbot.core.clock import Clock
from pairbot.domain.pair import ClosingReason, Pair, PairState, StateTransition

log = logging.getLogger("pairbot")


VALID_TRANSITIONS: Dict[PairState, List[PairState]] = {
    PairState.CREATED: [PairState.ENTRY_IN_PROGRESS],
    PairState.ENTRY_IN_PROGRESS: [
        PairState.ACTIVE,          # LEG2 adopted or placed
        PairState.CLOSING,         # entry abandoned / closed before confirmation
    ],
    PairState.ACTIVE: [PairState.CLOSING],
    PairState.CLOSING: [PairState.CLOSED],
    PairState.CLOSED: [],
}


class PairStateMachine:
    """
    Applies transitions to Pair records.

    Keeps counters of applied and blocked transitions and fires an optional
    on_state_change callback after every successful transition.
    """

    def __init__(
        self,
        clock: Clock,
        log_event: Optional[Callable[..., None]] = None,
        on_state_change: Optional[Callable[[Pair, PairState, PairState], None]] = None,
    ) -> None:
        self.clock = clock
        self._log_event = log_event or self._default_log
        self._on_state_change = on_state_change
        self._stats = {
            "transitions": 0,
            "invalid_transitions_blocked": 0,
            "activated": 0,
            "closed": 0,
        }

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    @staticmethod
    def is_valid_transition(from_state: PairState, to_state: PairState) -> bool:
        return to_state in VALID_TRANSITIONS.get(from_state, [])

    def transition(
        self,
        pair: Pair,
        to_state: PairState,
        reason: Optional[ClosingReason] = None,
    ) -> bool:
        """
        Attempt to move pair to to_state.

        Returns:
            True if applied, False if the edge is not allowed
        """
        from_state = pair.state
        if not self.is_valid_transition(from_state, to_state):
            self._stats["invalid_transitions_blocked"] += 1
            self._log_event(
                "pair_state_invalid_transition",
                level=logging.WARNING,
                pair_id=pair.pair_id,
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason.value if reason else None,
            )
            return False

        now = self.clock.now_ms()
        pair.transitions.append(StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp_ms=now,
            reason=reason.value if reason else None,
        ))
        pair.state = to_state

        if to_state is PairState.CLOSING and reason is not None:
            pair.closing_reason = reason
        if to_state is PairState.CLOSED:
            pair.closed_at_ms = now
            self._stats["closed"] += 1
        if to_state is PairState.ACTIVE:
            self._stats["activated"] += 1
        self._stats["transitions"] += 1

        self._log_event(
            "pair_state_transition",
            pair_id=pair.pair_id,
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason.value if reason else None,
        )

        if self._on_state_change:
            self._on_state_change(pair, from_state, to_state)
        return True

    def begin_closing(self, pair: Pair, reason: ClosingReason) -> bool:
        """ENTRY_IN_PROGRESS/ACTIVE -> CLOSING. Convenience for exit paths."""
        return self.transition(pair, PairState.CLOSING, reason)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
