"""
Unit tests for log deduplication and runtime level control.
"""

import pytest

from candle_pipeline.logger import LogDeduplicationFilter, logger_manager


class _File:
    def __init__(self, path):
        self.path = path


def _record(path="a.py", line=10):
    return {"file": _File(path), "line": line}


class TestLogDeduplicationFilter:

    def test_repeat_from_same_line_suppressed(self):
        dedup = LogDeduplicationFilter(max_history=5, time_threshold_seconds=60)

        assert dedup(_record()) is True
        assert dedup(_record()) is False

    def test_different_lines_pass(self):
        dedup = LogDeduplicationFilter(max_history=5, time_threshold_seconds=60)

        assert dedup(_record(line=1)) is True
        assert dedup(_record(line=2)) is True
        assert dedup(_record(path="b.py", line=1)) is True

    def test_expired_threshold_passes(self):
        dedup = LogDeduplicationFilter(max_history=5, time_threshold_seconds=0)

        assert dedup(_record()) is True
        assert dedup(_record()) is True


class TestLoggerManager:

    def test_set_level_round_trip(self):
        original = logger_manager.get_level()
        try:
            assert logger_manager.set_level("debug") == "DEBUG"
            assert logger_manager.get_level() == "DEBUG"
        finally:
            logger_manager.set_level(original)

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="Invalid level"):
            logger_manager.set_level("LOUD")
