"""Time Provider

Single source of "now" for the cache manager and the realtime aggregator.

Live operation reads the wall clock. Replays and tests pin the clock with
``set_time`` and move it forward with ``advance``; every TTL, quiet-window
and bucket-boundary decision then follows the pinned time.
"""
import time
from typing import Optional

from candle_pipeline.logger import logger


class TimeProvider:
    """Provides current time in epoch milliseconds.

    Live mode: returns wall-clock time (no state)
    Pinned mode: returns ``_pinned_ms`` (advanced explicitly)
    """

    def __init__(self, pinned_ms: Optional[int] = None) -> None:
        self._pinned_ms: Optional[int] = pinned_ms

    @property
    def is_pinned(self) -> bool:
        return self._pinned_ms is not None

    def now_ms(self) -> int:
        """Current time in epoch milliseconds."""
        if self._pinned_ms is not None:
            return self._pinned_ms
        return int(time.time() * 1000)

    def set_time(self, timestamp_ms: int) -> None:
        """Pin the clock to ``timestamp_ms``."""
        self._pinned_ms = int(timestamp_ms)
        logger.trace(f"TimeProvider pinned at {self._pinned_ms}")

    def advance(self, delta_ms: int) -> int:
        """Move a pinned clock forward and return the new time.

        Raises:
            ValueError: If the clock is not pinned
        """
        if self._pinned_ms is None:
            raise ValueError("Cannot advance a live clock; call set_time() first")
        self._pinned_ms += int(delta_ms)
        return self._pinned_ms

    def release(self) -> None:
        """Return to wall-clock time."""
        self._pinned_ms = None
