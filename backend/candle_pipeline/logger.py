"""
Loguru setup for the candle pipeline

Two sinks:
- stderr, ERROR and above, so CLI tables stay readable
- rotating log file at the configured level, with repeated call-site
  suppression (tick and boundary handlers can fire many times per second)

Modules log through ``from candle_pipeline.logger import logger``.
"""
import sys
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from candle_pipeline.config import LoggerConfig, settings


VALID_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level: <8}</level> "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> {message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


class LogDeduplicationFilter:
    """Drop records from a call site that logged less than a threshold ago.

    Call sites are (file path, line). Only the ``max_history`` most recently
    seen sites are remembered; older ones fall out and log freely again.

    Example (threshold 1s):
        12:00:00.100  api:on_tick:210  Rejected tick AAPL @ 0.0
        12:00:00.140  api:on_tick:210  Rejected tick AAPL @ nan    <- dropped
        12:00:01.500  api:on_tick:210  Rejected tick MSFT @ -1.0   <- emitted
    """

    def __init__(self, max_history: int = 5, time_threshold_seconds: float = 1.0):
        self.max_history = max_history
        self.time_threshold = time_threshold_seconds
        self._last_emitted: "OrderedDict[Tuple[str, int], float]" = OrderedDict()
        self._lock = threading.Lock()

    def __call__(self, record: Dict[str, Any]) -> bool:
        site = (record["file"].path, record["line"])
        now = time.monotonic()

        with self._lock:
            last = self._last_emitted.get(site)
            if last is not None and now - last < self.time_threshold:
                return False

            self._last_emitted[site] = now
            self._last_emitted.move_to_end(site)
            while len(self._last_emitted) > self.max_history:
                self._last_emitted.popitem(last=False)
            return True


class LoggerManager:
    """Owns the loguru sinks; the file sink level can change at runtime."""

    def __init__(self, config: Optional[LoggerConfig] = None):
        self.config = config or settings.LOGGER
        self.current_level = self._validate(self.config.default_level)
        self.log_file_path = Path(self.config.file_path)

        self.dedup_filter: Optional[LogDeduplicationFilter] = None
        if self.config.filter_enabled:
            self.dedup_filter = LogDeduplicationFilter(
                max_history=self.config.filter_max_history,
                time_threshold_seconds=self.config.filter_time_threshold_seconds,
            )

        self._file_sink_id: Optional[int] = None

        logger.remove()
        logger.add(
            sys.stderr,
            level="ERROR",
            format=CONSOLE_FORMAT,
            colorize=True,
            backtrace=True,
            diagnose=False,
        )
        self._add_file_sink()

    @staticmethod
    def _validate(level: str) -> str:
        level_upper = level.upper()
        if level_upper not in VALID_LEVELS:
            raise ValueError(f"Invalid level '{level}'. Choose from: {', '.join(VALID_LEVELS)}")
        return level_upper

    def _add_file_sink(self) -> None:
        self.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        self._file_sink_id = logger.add(
            str(self.log_file_path),
            level=self.current_level,
            format=FILE_FORMAT,
            rotation=self.config.rotation,
            retention=self.config.retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
            enqueue=True,
            filter=self.dedup_filter,
        )

    def set_level(self, level: str) -> str:
        """Change the file sink level.

        Raises:
            ValueError: If level is not a loguru level name
        """
        new_level = self._validate(level)
        if self._file_sink_id is not None:
            logger.remove(self._file_sink_id)

        old_level, self.current_level = self.current_level, new_level
        self._add_file_sink()

        logger.info(f"Log level changed from {old_level} to {new_level}")
        return self.current_level

    def get_level(self) -> str:
        return self.current_level


logger_manager = LoggerManager()

__all__ = ["logger", "logger_manager", "LoggerManager", "LogDeduplicationFilter"]
