"""
State package: Pair Store and Ownership Registry.
"""

from pairbot.state.ownership_registry import OwnershipRegistry
from pairbot.state.pair_store import PairStore

__all__ = ["OwnershipRegistry", "PairStore"]
