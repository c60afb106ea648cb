"""
CandlePipeline - composition root

Wires one storage backend, one market data provider and (optionally) one
realtime transport into a CandleCacheManager and a RealtimeCandleAggregator
sharing a single TimeProvider.

Usage:
    async with CandlePipeline.from_settings() as pipeline:
        candles = await pipeline.manager.get_candles("AAPL", "4h", 50)
"""
import asyncio
from typing import Iterable, Optional

from candle_pipeline.config import Settings, settings as default_settings
from candle_pipeline.core.enums import SystemState
from candle_pipeline.integrations.alpaca_data import AlpacaCandleProvider
from candle_pipeline.integrations.alpaca_streams import AlpacaRealtimeTransport
from candle_pipeline.integrations.base import (
    KeyValueStorage,
    MarketDataProvider,
    RealtimeTransport,
    Unsubscribe,
)
from candle_pipeline.integrations.storage import InMemoryStorage, SqlKeyValueStorage
from candle_pipeline.managers.candle_manager import CandleCacheManager
from candle_pipeline.managers.realtime_aggregator import RealtimeCandleAggregator
from candle_pipeline.managers.time_provider import TimeProvider
from candle_pipeline.logger import logger


class CandlePipeline:
    """Owns the manager/aggregator pair and the resources behind them."""

    def __init__(
        self,
        manager: CandleCacheManager,
        aggregator: RealtimeCandleAggregator,
        storage: KeyValueStorage,
        transport: Optional[RealtimeTransport] = None,
    ):
        self.manager = manager
        self.aggregator = aggregator
        self.storage = storage
        self.transport = transport
        self._detach: Optional[Unsubscribe] = None
        self._state = SystemState.STOPPED

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        provider: Optional[MarketDataProvider] = None,
        storage: Optional[KeyValueStorage] = None,
        time_provider: Optional[TimeProvider] = None,
    ) -> "CandlePipeline":
        """Build a pipeline from settings.

        Args:
            config: Settings instance (default: global settings)
            provider: Override for the Alpaca historical provider
            storage: Override for the storage selected by STORAGE.backend
            time_provider: Shared clock (default: wall clock)
        """
        config = config or default_settings

        if storage is None:
            backend = config.STORAGE.backend.lower()
            if backend == "memory":
                storage = InMemoryStorage()
            elif backend == "sql":
                storage = SqlKeyValueStorage(config.STORAGE.url)
            else:
                raise ValueError(f"Unknown storage backend '{config.STORAGE.backend}' (expected 'sql' or 'memory')")

        provider = provider or AlpacaCandleProvider(config.ALPACA)
        time_provider = time_provider or TimeProvider()

        manager = CandleCacheManager(provider, storage, config.CANDLE_CACHE, time_provider)
        aggregator = RealtimeCandleAggregator(config.AGGREGATOR, time_provider)
        transport = AlpacaRealtimeTransport(config.ALPACA)

        logger.info(f"CandlePipeline built (storage={type(storage).__name__}, provider={provider.source_name})")
        return cls(manager, aggregator, storage, transport)

    @property
    def state(self) -> SystemState:
        return self._state

    async def start(self) -> None:
        """Start the cache sweep and feed the aggregator from the transport."""
        if self._state == SystemState.RUNNING:
            logger.warning("CandlePipeline already running")
            return

        await self.manager.start()
        if self.transport is not None:
            self._detach = self.aggregator.attach(self.transport)

        self._state = SystemState.RUNNING
        logger.info("CandlePipeline started")

    async def stop(self) -> None:
        """Stop the sweep, cancel boundary tasks and release storage."""
        if self._state == SystemState.STOPPED:
            return

        if self._detach is not None:
            self._detach()
            self._detach = None

        await self.manager.stop()
        self.aggregator.close()
        await self.storage.close()

        self._state = SystemState.STOPPED
        logger.info("CandlePipeline stopped")

    async def stream(self, symbols: Iterable[str], cancel_event: asyncio.Event) -> None:
        """Run the realtime transport until ``cancel_event`` is set.

        Only transports with a ``run(symbols, cancel_event)`` coroutine
        (e.g. AlpacaRealtimeTransport) can be streamed this way.
        """
        run = getattr(self.transport, "run", None)
        if run is None:
            raise RuntimeError("Configured transport does not support streaming")
        await run(symbols, cancel_event)

    async def __aenter__(self) -> "CandlePipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
