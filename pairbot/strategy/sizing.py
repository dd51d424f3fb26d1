"""
Lot sizing and SL/TP geometry for new pairs.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Protocol

from pairbot.config.config import Settings
from pairbot.domain.pair import Side


@dataclass
class Candle:
    open: float
    high: float
    low: float
    close: float


class IndicatorSource(Protocol):
    """What SL/TP computation needs from the indicator layer."""

    def atr(self) -> Optional[float]:
        ...

    def recent_candles(self, n: int) -> List[Candle]:
        ...


class CandleIndicators:
    """
    Rolling M5 candle window with a simple-average ATR.

    Candles are pushed directly or built from ticks with on_price(). Not warm
    until atr_len + 1 candles have been closed.
    """

    def __init__(self, atr_len: int = 14, maxlen: int = 200, period_ms: int = 300_000) -> None:
        self.atr_len = atr_len
        self.period_ms = period_ms
        self.candles: Deque[Candle] = deque(maxlen=max(maxlen, atr_len + 1))
        self._building: Optional[Candle] = None
        self._bucket: Optional[int] = None

    def push(self, candle: Candle) -> None:
        self.candles.append(candle)

    def on_price(self, price: float, now_ms: int) -> Optional[Candle]:
        """Fold a tick into the current candle. Returns the candle closed by this tick, if any."""
        bucket = now_ms // self.period_ms
        closed = None
        if self._building is not None and bucket != self._bucket:
            closed = self._building
            self.push(closed)
            self._building = None
        if self._building is None:
            self._building = Candle(open=price, high=price, low=price, close=price)
            self._bucket = bucket
        else:
            c = self._building
            c.high = max(c.high, price)
            c.low = min(c.low, price)
            c.close = price
        return closed

    def atr(self) -> Optional[float]:
        if len(self.candles) < self.atr_len + 1:
            return None
        window = list(self.candles)[-(self.atr_len + 1):]
        trs = []
        for prev, cur in zip(window, window[1:]):
            trs.append(max(cur.high - cur.low, abs(cur.high - prev.close), abs(cur.low - prev.close)))
        return sum(trs) / len(trs)

    def recent_candles(self, n: int) -> List[Candle]:
        return list(self.candles)[-n:]


@dataclass
class StopLevels:
    sl: float
    tp: float
    sl_distance: float
    tp_distance: float
    fallback: bool = False


def split_lot(total_lot: float, min_lot: float) -> Optional[float]:
    """Per-leg lot for a pair of total_lot, or None if a leg would be below min_lot."""
    lot_each = round(total_lot / 2, 2)
    if lot_each < min_lot:
        return None
    return lot_each


def _levels(side: Side, entry: float, sl_dist: float, tp_dist: float, fallback: bool) -> StopLevels:
    if side is Side.BUY:
        sl, tp = entry - sl_dist, entry + tp_dist
    else:
        sl, tp = entry + sl_dist, entry - tp_dist
    return StopLevels(sl=round(sl, 5), tp=round(tp, 5), sl_distance=sl_dist, tp_distance=tp_dist, fallback=fallback)


def dynamic_stop_levels(
    side: Side,
    entry: float,
    settings: Settings,
    indicators: Optional[IndicatorSource],
) -> Optional[StopLevels]:
    """
    SL distance = max(half the range of the last 3 candles, ATR x multiplier),
    capped at max_sl_distance. TP distance = reward ratio x SL, capped at
    max_tp_distance. None while the indicators are not warm.
    """
    if indicators is None:
        return None
    atr = indicators.atr()
    if not atr or atr <= 0:
        return None
    recent = indicators.recent_candles(3)
    if len(recent) < 3:
        return None

    retracement = abs(max(c.high for c in recent) - min(c.low for c in recent))
    sl_dist = min(max(retracement * 0.5, atr * settings.atr_trigger_multiplier), settings.max_sl_distance)
    tp_dist = min(sl_dist * settings.tp_reward_ratio, settings.max_tp_distance)
    return _levels(side, entry, sl_dist, tp_dist, fallback=False)


def fallback_stop_levels(side: Side, entry: float, settings: Settings) -> StopLevels:
    return _levels(side, entry, settings.fallback_sl_distance, settings.fallback_tp_distance, fallback=True)


def compute_stop_levels(
    side: Side,
    entry: float,
    settings: Settings,
    indicators: Optional[IndicatorSource] = None,
) -> StopLevels:
    return dynamic_stop_levels(side, entry, settings, indicators) or fallback_stop_levels(side, entry, settings)
