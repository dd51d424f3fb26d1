"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import pairbot.
"""

import json
import logging
import sys
from pathlib import Path

import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from pairbot.config.config import Settings  # noqa: E402
from pairbot.core.clock import ManualClock  # noqa: E402
from pairbot.core.context import EngineContext  # noqa: E402
from pairbot.domain.pair import Pair, PairState, Side  # noqa: E402
from pairbot.execution.paper_broker import PaperBroker  # noqa: E402
from pairbot.orchestrator.engine import PairEngine  # noqa: E402


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    # 0.04 total -> 0.02 per leg
    return Settings(fixed_lot=0.04)


@pytest.fixture
def broker(clock):
    return PaperBroker(clock)


@pytest.fixture
def ctx(settings, broker, clock):
    return EngineContext.create(settings, broker, clock=clock)


@pytest.fixture
def engine(ctx):
    return PairEngine(ctx)


@pytest.fixture
def make_active_pair(ctx, broker, clock):
    """
    Factory for an ACTIVE pair whose two legs already exist at the broker.

    age_ms ages the pair (and its positions) so the tick age gate and the
    reconciler grace windows are already behind it.
    """

    def _make(
        side=Side.BUY,
        entry=2000.0,
        sl=1996.0,
        tp=2008.0,
        category="T_BUY",
        lot=0.02,
        age_ms=10_000,
        leg2_age_ms=None,
        context=None,
    ):
        c = context or ctx
        now = clock.now_ms()
        t1 = broker.open_position(side, lot, age_ms=age_ms)
        t2 = broker.open_position(side, lot, age_ms=age_ms)
        pair = Pair(
            pair_id=c.new_pair_id(),
            side=side,
            lot_each=lot,
            category=category,
            entry_price=entry,
            sl=sl,
            tp=tp,
            opened_at_ms=now - age_ms,
            entry_timestamp_ms=now - age_ms,
            leg2_placed_at_ms=now - (age_ms if leg2_age_ms is None else leg2_age_ms),
        )
        pair.partial.ticket = t1
        pair.trailing.ticket = t2
        c.store.insert(pair)
        c.state_machine.transition(pair, PairState.ENTRY_IN_PROGRESS)
        c.state_machine.transition(pair, PairState.ACTIVE)
        c.registry.register(t1, pair.pair_id)
        c.registry.register(t2, pair.pair_id)
        return pair

    return _make


@pytest.fixture
def log_events(caplog):
    """Return a lookup of structured (JSON) log events by name."""
    caplog.set_level(logging.DEBUG, logger="pairbot")

    def _events(name):
        found = []
        for record in caplog.records:
            try:
                data = json.loads(record.getMessage())
            except ValueError:
                continue
            if isinstance(data, dict) and data.get("event") == name:
                found.append(data)
        return found

    return _events
