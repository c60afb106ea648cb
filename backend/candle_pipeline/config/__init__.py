"""
Configuration module
"""
from candle_pipeline.config.settings import (
    settings,
    Settings,
    CandleCacheConfig,
    AggregatorConfig,
    AlpacaConfig,
    StorageConfig,
    LoggerConfig,
)

__all__ = [
    "settings",
    "Settings",
    "CandleCacheConfig",
    "AggregatorConfig",
    "AlpacaConfig",
    "StorageConfig",
    "LoggerConfig",
]
