"""
pairbot: paired-position lifecycle engine.

Opens two correlated broker positions per trading intent, reconciles them
against eventually-consistent broker state and drives partial-close,
break-even, stop-loss and take-profit exits from the tick stream.
"""

__version__ = "0.4.0"
