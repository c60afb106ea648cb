"""Test Fixtures Package

Provides reusable test fixtures for all test modules.

Fixtures:
- candle_data: pinned clock, config objects and candle series builders
- fake_provider: scriptable MarketDataProvider that records its calls
- storage: in-memory, failing and SQLite-backed key-value storage
"""

from tests.fixtures.candle_data import (
    BASE_TIME,
    MINUTE_MS,
    HOUR_MS,
    make_candles,
)
from tests.fixtures.fake_provider import FakeProvider
from tests.fixtures.storage import FailingStorage

__all__ = [
    'BASE_TIME',
    'MINUTE_MS',
    'HOUR_MS',
    'make_candles',
    'FakeProvider',
    'FailingStorage',
]
