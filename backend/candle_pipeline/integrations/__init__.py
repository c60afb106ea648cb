"""
Integrations
External collaborators: market data provider, realtime transport and
key-value storage.
"""
from candle_pipeline.integrations.base import (
    MarketDataProvider,
    KeyValueStorage,
    RealtimeTransport,
)
from candle_pipeline.integrations.storage import InMemoryStorage, SqlKeyValueStorage
from candle_pipeline.integrations.alpaca_data import AlpacaCandleProvider
from candle_pipeline.integrations.alpaca_streams import AlpacaRealtimeTransport

__all__ = [
    'MarketDataProvider',
    'KeyValueStorage',
    'RealtimeTransport',
    'InMemoryStorage',
    'SqlKeyValueStorage',
    'AlpacaCandleProvider',
    'AlpacaRealtimeTransport',
]
