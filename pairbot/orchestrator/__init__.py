"""
Orchestrator package - engine wiring and scheduler loops.
"""

from pairbot.orchestrator.engine import MarketFreezeDetector, PairEngine, ReconcileCycle

__all__ = ["MarketFreezeDetector", "PairEngine", "ReconcileCycle"]
