"""
Core primitives: timeframes, derivation, merge and exceptions.
"""
from candle_pipeline.core.enums import SystemState
from candle_pipeline.core.exceptions import (
    CandlePipelineError,
    ProviderError,
    StorageError,
)
from candle_pipeline.core.timeframes import (
    TIMEFRAME_HIERARCHY,
    TimeframeSpec,
    normalize_timeframe,
    timeframe_minutes,
    timeframe_to_ms,
    bucket_start,
)
from candle_pipeline.core.derivation import (
    aggregate_ohlcv,
    group_by_fixed_chunks,
    derive_timeframe,
    try_derive,
)
from candle_pipeline.core.merge import merge_candles
from candle_pipeline.core.channel import ListenerChannel

__all__ = [
    "SystemState",
    "CandlePipelineError",
    "ProviderError",
    "StorageError",
    "TIMEFRAME_HIERARCHY",
    "TimeframeSpec",
    "normalize_timeframe",
    "timeframe_minutes",
    "timeframe_to_ms",
    "bucket_start",
    "aggregate_ohlcv",
    "group_by_fixed_chunks",
    "derive_timeframe",
    "try_derive",
    "merge_candles",
    "ListenerChannel",
]
