"""Incremental Merge

Folds freshly fetched candles into a cached base series while keeping the
series strictly ascending by time.
"""
from typing import Iterable

from candle_pipeline.models.candles import BaseCandle, CandleCacheEntry


def merge_candles(
    entry: CandleCacheEntry,
    new_candles: Iterable[BaseCandle],
    now_ms: int,
    max_candles: int
) -> int:
    """Merge ``new_candles`` into ``entry`` in place.

    Rules:
    - A fetched candle with the same time as the cached last candle
      replaces it (the provider may have revised the still-open bar).
    - Anything else at or before the previous last time is ignored.
    - Strictly newer candles are appended in time order.
    - The series is trimmed to ``max_candles`` from the oldest end.

    Args:
        entry: Cache entry to update
        new_candles: Candles returned by the provider, any order
        now_ms: Current time in epoch ms (stored as ``last_update``)
        max_candles: Maximum retained series length

    Returns:
        Number of candles appended
    """
    # Last occurrence wins when the provider repeats a timestamp
    incoming = sorted({c.time: c for c in new_candles}.values(), key=lambda c: c.time)
    if not incoming:
        return 0

    last_cached_time = entry.data[-1].time if entry.data else 0

    if entry.data:
        for candle in incoming:
            if candle.time == last_cached_time:
                entry.data[-1] = candle
                break

    appended = [c for c in incoming if c.time > last_cached_time]
    entry.data.extend(appended)

    if len(entry.data) > max_candles:
        entry.data = entry.data[-max_candles:]

    entry.last_update = now_ms
    entry.last_candle = entry.data[-1].time if entry.data else 0
    return len(appended)
