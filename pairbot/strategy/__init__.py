from pairbot.strategy.sizing import (
    Candle,
    CandleIndicators,
    IndicatorSource,
    StopLevels,
    compute_stop_levels,
    split_lot,
)

__all__ = [
    "Candle",
    "CandleIndicators",
    "IndicatorSource",
    "StopLevels",
    "compute_stop_levels",
    "split_lot",
]
