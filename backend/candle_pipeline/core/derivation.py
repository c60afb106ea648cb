"""Timeframe Derivation

Synthesizes coarser candles from a cached finer base series:
- 1m → 5m, 15m, 1h, ...
- 5m → 15m, 1h, 4h, 1D, ...

Grouping is index-aligned: chunks of ``ratio`` candles are taken from the
start of the array, not aligned to calendar boundaries. Downstream
consumers rely on this, so a series that starts at 09:31 produces 5m bars
opening at 09:31, 09:36, ...
"""
from typing import Iterator, List, Optional, Sequence

from candle_pipeline.core.timeframes import MS_PER_MINUTE, timeframe_minutes
from candle_pipeline.models.candles import BaseCandle, CandleCacheEntry
from candle_pipeline.logger import logger


def aggregate_ohlcv(group: Sequence[BaseCandle]) -> BaseCandle:
    """Aggregate OHLCV for a chronologically sorted group of candles.

    OHLCV rules:
    - Open: First candle's open
    - High: Maximum high across the group
    - Low: Minimum low across the group
    - Close: Last candle's close
    - Volume: Sum of all volumes

    Raises:
        ValueError: If group is empty
    """
    if not group:
        raise ValueError("Cannot aggregate empty group")

    return BaseCandle(
        time=group[0].time,
        open=group[0].open,
        high=max(candle.high for candle in group),
        low=min(candle.low for candle in group),
        close=group[-1].close,
        volume=sum(candle.volume for candle in group),
    )


def group_by_fixed_chunks(
    data: Sequence[BaseCandle],
    ratio: int
) -> Iterator[Sequence[BaseCandle]]:
    """Yield consecutive, non-overlapping chunks of ``ratio`` candles.

    Only complete chunks are yielded, except for the final chunk, which is
    kept even when short because it reaches the end of the array (the
    still-forming higher-timeframe bar).
    """
    if ratio < 1:
        raise ValueError(f"Chunk ratio must be positive, got {ratio}")

    for start in range(0, len(data), ratio):
        group = data[start:start + ratio]
        if len(group) == ratio or start + ratio >= len(data):
            yield group


def derive_timeframe(
    base_data: Sequence[BaseCandle],
    base_minutes: int,
    target_minutes: int,
    limit: int
) -> List[BaseCandle]:
    """Derive ``target_minutes`` candles from ``base_minutes`` candles.

    Args:
        base_data: Base series (chronologically ordered)
        base_minutes: Width of one base candle in minutes
        target_minutes: Requested width in minutes
        limit: Maximum number of (most recent) candles to return

    Returns:
        Up to ``limit`` derived candles, oldest first
    """
    if not base_data or limit <= 0:
        return []

    ratio = target_minutes // base_minutes
    if ratio <= 1:
        return list(base_data[-limit:])

    derived = [aggregate_ohlcv(group) for group in group_by_fixed_chunks(base_data, ratio)]

    logger.debug(
        f"Derived {len(derived)} {target_minutes}m candles from "
        f"{len(base_data)} {base_minutes}m candles (ratio={ratio})"
    )
    return derived[-limit:]


def is_cache_stale(entry: CandleCacheEntry, now_ms: int, cache_ttl_ms: int) -> bool:
    """True once the entry has not been refreshed for longer than the TTL."""
    return now_ms - entry.last_update > cache_ttl_ms


def try_derive(
    entry: Optional[CandleCacheEntry],
    target_timeframe: str,
    limit: int,
    now_ms: int,
    cache_ttl_ms: Optional[int]
) -> Optional[List[BaseCandle]]:
    """Answer a timeframe query from a cached base series.

    Pass ``cache_ttl_ms=None`` to skip the staleness check (used when
    serving best-effort data after a failed fetch).

    Returns:
        Derived candles, or None when derivation is not possible:
        no cache, stale cache, unknown timeframe, or a target finer than
        the base resolution.
    """
    if entry is None:
        return None

    if cache_ttl_ms is not None and is_cache_stale(entry, now_ms, cache_ttl_ms):
        logger.debug(
            f"Cache stale for {entry.symbol} (age: {now_ms - entry.last_update}ms)"
        )
        return None

    base_minutes = timeframe_minutes(entry.base_timeframe)
    target_minutes = timeframe_minutes(target_timeframe)
    if not base_minutes or not target_minutes:
        logger.debug(
            f"Unknown timeframe: base={entry.base_timeframe}, target={target_timeframe}"
        )
        return None

    # Finer granularity cannot be synthesized from coarser data
    if target_minutes < base_minutes:
        return None

    if target_minutes == base_minutes:
        return list(entry.data[-limit:]) if limit > 0 else []

    return derive_timeframe(entry.data, base_minutes, target_minutes, limit)


def bar_duration_ms(timeframe: str) -> int:
    """Width of one cached bar in ms, one minute for unknown labels."""
    return (timeframe_minutes(timeframe) or 1) * MS_PER_MINUTE
