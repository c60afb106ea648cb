"""
Candle models
"""
from candle_pipeline.models.candles import (
    BaseCandle,
    AggregatedCandle,
    CandleCacheEntry,
    CacheStats,
    AggregatorStats,
    TickRecord,
)

__all__ = [
    "BaseCandle",
    "AggregatedCandle",
    "CandleCacheEntry",
    "CacheStats",
    "AggregatorStats",
    "TickRecord",
]
