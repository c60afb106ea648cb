"""
Candle data models shared by the cache manager and the realtime aggregator
"""
import math
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, Field


class BaseCandle(BaseModel):
    """One OHLCV bar at a fixed resolution.

    ``time`` is the bar's open time in epoch milliseconds.
    """
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class AggregatedCandle(BaseCandle):
    """Candle tracked by the realtime aggregator for one (symbol, timeframe).

    ``is_complete`` flips to True exactly once, when the bucket closes.
    """
    symbol: str
    timeframe: str
    is_complete: bool = False

    @classmethod
    def placeholder(cls, symbol: str, timeframe: str, time: int) -> "AggregatedCandle":
        """Forming candle waiting for its first real tick."""
        return cls(
            symbol=symbol,
            timeframe=timeframe,
            time=time,
            open=0.0,
            high=0.0,
            low=math.inf,
            close=0.0,
            volume=0.0,
            is_complete=False,
        )

    @property
    def is_placeholder(self) -> bool:
        """True while no real tick has touched this candle."""
        return self.open == 0 and self.high == 0 and math.isinf(self.low)


class CandleCacheEntry(BaseModel):
    """Cached base series for a single symbol.

    ``data`` is strictly ascending by time; ``last_candle`` mirrors the
    time of the newest bar (0 when empty). Serialized as-is into storage.
    """
    symbol: str
    base_timeframe: str
    data: List[BaseCandle] = Field(default_factory=list)
    last_update: int = 0
    last_candle: int = 0


class CacheStats(BaseModel):
    """Diagnostic snapshot of the candle cache."""
    symbols: int
    total_candles: int
    memory_usage: str
    inflight_requests: int = 0


class AggregatorStats(BaseModel):
    """Diagnostic snapshot of the realtime aggregator."""
    symbols: int
    tracked_pairs: int
    buffered_ticks: int
    listeners: int
    active_timers: int


@dataclass
class TickRecord:
    """Raw price tick retained for ad-hoc candle reconstruction."""
    price: float
    timestamp: int
    volume: Optional[float] = None
