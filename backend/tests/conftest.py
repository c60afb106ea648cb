"""Shared pytest configuration for the candle pipeline test suite.

Fixture modules under tests/fixtures are registered as plugins, so their
fixtures are available everywhere without imports.
"""
import pytest
import sys
from pathlib import Path

# backend/ on sys.path so "candle_pipeline" and "tests.fixtures" import
BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

pytest_plugins = [
    "tests.fixtures.candle_data",
    "tests.fixtures.fake_provider",
    "tests.fixtures.storage",
]

MARKERS = {
    "unit": "Unit tests with fakes only (fast)",
    "integration": "Integration tests wiring real components together",
    "slow": "Slow-running tests (skip with -m 'not slow')",
    "db": "Tests requiring a SQL database",
}


def pytest_configure(config):
    """Register custom markers."""
    for name, description in MARKERS.items():
        config.addinivalue_line("markers", f"{name}: {description}")


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory (unit/, integration/) and SQL fixture use."""
    for item in items:
        parts = Path(str(item.fspath)).parts

        if "unit" in parts:
            item.add_marker(pytest.mark.unit)
        if "integration" in parts:
            item.add_marker(pytest.mark.integration)
        if "sql_storage" in item.fixturenames:
            item.add_marker(pytest.mark.db)
