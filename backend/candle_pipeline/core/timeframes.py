"""Timeframe Hierarchy

Canonical timeframe labels, synonym normalization and bucket arithmetic.

Two lookups live here and they differ:
- ``TIMEFRAME_HIERARCHY`` drives cache derivation and only knows the
  canonical labels ("1m" ... "1M").
- ``timeframe_to_ms`` drives realtime bucketing and also accepts free-form
  labels such as "10s" or "90min".
"""
import re
from dataclasses import dataclass
from typing import Dict, Optional

from candle_pipeline.logger import logger


MS_PER_SECOND = 1_000
MS_PER_MINUTE = 60 * MS_PER_SECOND


@dataclass(frozen=True)
class TimeframeSpec:
    """Canonical timeframe with its width in minutes and sort priority."""
    label: str
    minutes: int
    priority: int

    @property
    def milliseconds(self) -> int:
        return self.minutes * MS_PER_MINUTE


TIMEFRAME_HIERARCHY: Dict[str, TimeframeSpec] = {
    spec.label: spec
    for spec in (
        TimeframeSpec("1m", 1, 1),
        TimeframeSpec("2m", 2, 2),
        TimeframeSpec("3m", 3, 3),
        TimeframeSpec("5m", 5, 4),
        TimeframeSpec("15m", 15, 5),
        TimeframeSpec("30m", 30, 6),
        TimeframeSpec("1h", 60, 7),
        TimeframeSpec("2h", 120, 8),
        TimeframeSpec("4h", 240, 9),
        TimeframeSpec("1D", 1440, 10),
        TimeframeSpec("1W", 10080, 11),
        TimeframeSpec("1M", 43200, 12),  # Approximate (30 days)
    )
}

# Lower-cased input -> canonical label
_TIMEFRAME_SYNONYMS: Dict[str, str] = {
    "1h": "1h",
    "1hr": "1h",
    "1hour": "1h",
    "2h": "2h",
    "4h": "4h",
    "1d": "1D",
    "1day": "1D",
    "1w": "1W",
    "1week": "1W",
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1mo": "1M",
    "1month": "1M",
}

_UNIT_MS = {
    "s": MS_PER_SECOND,
    "m": MS_PER_MINUTE,
    "h": 60 * MS_PER_MINUTE,
    "d": 24 * 60 * MS_PER_MINUTE,
    "w": 7 * 24 * 60 * MS_PER_MINUTE,
    "mo": 30 * 24 * 60 * MS_PER_MINUTE,
}

_UNIT_ALIASES = {
    "s": "s", "sec": "s", "secs": "s", "second": "s", "seconds": "s",
    "m": "m", "min": "m", "mins": "m", "minute": "m", "minutes": "m",
    "h": "h", "hr": "h", "hrs": "h", "hour": "h", "hours": "h",
    "d": "d", "day": "d", "days": "d",
    "w": "w", "wk": "w", "week": "w", "weeks": "w",
    "mo": "mo", "mon": "mo", "month": "mo", "months": "mo",
}

_TIMEFRAME_PATTERN = re.compile(r"^(\d+)\s*([a-z]+)$")


def normalize_timeframe(timeframe: str) -> str:
    """Map a user-supplied timeframe to its canonical label.

    Matching is case-insensitive. Strings with no known synonym are
    returned unchanged (original casing), so unknown labels flow through
    as distinct timeframes instead of being rejected.

    Examples:
        >>> normalize_timeframe("1HR")
        '1h'
        >>> normalize_timeframe("1day")
        '1D'
        >>> normalize_timeframe("3m")
        '3m'
    """
    return _TIMEFRAME_SYNONYMS.get(timeframe.lower(), timeframe)


def timeframe_minutes(timeframe: str) -> Optional[int]:
    """Width in minutes of a canonical label, or None if not in the hierarchy."""
    spec = TIMEFRAME_HIERARCHY.get(timeframe)
    return spec.minutes if spec else None


def timeframe_to_ms(timeframe: str) -> int:
    """Bucket width in milliseconds for any timeframe label.

    Canonical labels resolve through the hierarchy first, which keeps
    "1m" (minute) and "1M" (month) apart. Anything else is parsed as
    ``<count><unit>``; unparseable labels fall back to one minute.
    """
    spec = TIMEFRAME_HIERARCHY.get(timeframe)
    if spec is not None:
        return spec.milliseconds

    match = _TIMEFRAME_PATTERN.match(timeframe.strip().lower())
    if match:
        count = int(match.group(1))
        unit = _UNIT_ALIASES.get(match.group(2))
        if unit is not None and count > 0:
            return count * _UNIT_MS[unit]

    logger.warning(f"Unrecognized timeframe '{timeframe}', defaulting to 1 minute buckets")
    return MS_PER_MINUTE


def bucket_start(timestamp_ms: int, timeframe_ms: int) -> int:
    """Start of the bucket containing ``timestamp_ms``."""
    return (int(timestamp_ms) // timeframe_ms) * timeframe_ms
