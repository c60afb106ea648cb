"""
Manager APIs

- CandleCacheManager: historical candles, cached in memory and storage,
  with derivation of higher timeframes from a cached base series
- RealtimeCandleAggregator: live forming candles built from ticks
- TimeProvider: shared clock (live or pinned)

The two managers share no state. CandlePipeline (candle_pipeline.services)
wires them to a provider, a storage backend and a realtime transport.
"""

from candle_pipeline.managers.time_provider import TimeProvider
from candle_pipeline.managers.candle_manager import CandleCacheManager
from candle_pipeline.managers.realtime_aggregator import RealtimeCandleAggregator

__all__ = [
    'TimeProvider',
    'CandleCacheManager',
    'RealtimeCandleAggregator',
]
