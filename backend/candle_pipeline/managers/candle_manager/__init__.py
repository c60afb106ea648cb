"""Candle Cache Manager - memory/storage-cached historical candles."""
from candle_pipeline.managers.candle_manager.api import CandleCacheManager

__all__ = ['CandleCacheManager']
