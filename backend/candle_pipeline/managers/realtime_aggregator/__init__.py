"""Realtime Candle Aggregator - live candles from ticks."""
from candle_pipeline.managers.realtime_aggregator.api import RealtimeCandleAggregator

__all__ = ['RealtimeCandleAggregator']
