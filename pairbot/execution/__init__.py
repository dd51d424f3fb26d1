"""
Execution layer of the pair engine.

- PairStateMachine: validated lifecycle transitions
- EntryLock: process-wide gate for new entries
- BrokerGateway / PaperBroker: broker capability set and in-memory connector
- EntryCoordinator: signal admission, LEG1 placement, CLOSE signals
- Reconciler: broker snapshot reconciliation and the entry-timeout guard
- TickProcessor: partial / break-even / TP / SL exits
- Finalizer: idempotent teardown and the shared exit path
"""

from pairbot.execution.broker_gateway import (
    BrokerError,
    BrokerGateway,
    BrokerPosition,
    CloseResult,
    OrderRejected,
    PlaceResult,
    Quote,
)
from pairbot.execution.entry_coordinator import (
    AdmissionResult,
    CloseSignalResult,
    EntryCoordinator,
    RejectionReason,
)
from pairbot.execution.entry_lock import EntryLock
from pairbot.execution.finalizer import ClosedPair, Finalizer
from pairbot.execution.pair_state_machine import VALID_TRANSITIONS, PairStateMachine
from pairbot.execution.paper_broker import PaperBroker
from pairbot.execution.reconciliation_service import ReconcileResult, Reconciler, TimeoutReapResult
from pairbot.execution.tick_processor import TickProcessor, TickResult
from pairbot.execution.trailing import StaticTrailing, StepTrailing, TrailingPolicy, build_trailing

__all__ = [
    "AdmissionResult",
    "BrokerError",
    "BrokerGateway",
    "BrokerPosition",
    "CloseResult",
    "CloseSignalResult",
    "ClosedPair",
    "EntryCoordinator",
    "EntryLock",
    "Finalizer",
    "OrderRejected",
    "PairStateMachine",
    "PaperBroker",
    "PlaceResult",
    "Quote",
    "ReconcileResult",
    "Reconciler",
    "RejectionReason",
    "StaticTrailing",
    "StepTrailing",
    "TickProcessor",
    "TickResult",
    "TimeoutReapResult",
    "TrailingPolicy",
    "VALID_TRANSITIONS",
    "build_trailing",
]
