"""
Base interfaces for the pipeline's external collaborators.

The cache manager and the realtime aggregator only talk to these
abstractions; concrete integrations (Alpaca REST/websocket, SQL storage,
in-memory storage) implement them.
"""
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from candle_pipeline.models.candles import AggregatedCandle, BaseCandle


PriceListener = Callable[[str, float, int], None]
CandleListener = Callable[[str, AggregatedCandle], None]
Unsubscribe = Callable[[], None]


class MarketDataProvider(ABC):
    """
    Source of historical candles.
    """

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Name of the data source (e.g., 'alpaca')"""
        pass

    @abstractmethod
    async def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        *,
        out_bars: int,
        base_cushion: float = 1.0
    ) -> List[BaseCandle]:
        """
        Fetch the most recent candles for a symbol.

        Args:
            symbol: Stock symbol
            timeframe: Canonical timeframe label ("1m", "5m", "1h", "1D", ...)
            out_bars: Number of most recent bars wanted
            base_cushion: Multiplier applied to the lookback window so that
                gaps (nights, weekends) still yield ``out_bars`` bars

        Returns:
            Candles in ascending time order

        Raises:
            ProviderError: On transport, HTTP or payload errors
        """
        pass


class KeyValueStorage(ABC):
    """
    Persistent string key-value store used for cache snapshots.
    Each call may fail independently with StorageError.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored blob, or None if absent."""
        pass

    @abstractmethod
    async def set(self, key: str, blob: str) -> None:
        """Store ``blob`` under ``key``, replacing any previous value."""
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete ``key``; removing a missing key is not an error."""
        pass

    async def close(self) -> None:
        """Release underlying resources."""
        return None


class RealtimeTransport(ABC):
    """
    Push source of live prices and provider-finished candles.
    Delivery is FIFO per symbol; ordering across symbols is unspecified.
    """

    @abstractmethod
    def on_price(self, listener: PriceListener) -> Unsubscribe:
        """Register ``listener(symbol, price, timestamp_ms)``."""
        pass

    @abstractmethod
    def on_candle(self, listener: CandleListener) -> Unsubscribe:
        """Register ``listener(symbol, finished_candle)``."""
        pass
