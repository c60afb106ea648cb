"""
CandleCacheManager - multi-timeframe candle cache

Keeps one high-resolution "base" series per symbol and answers requests
for coarser timeframes by deriving them from that series. Only when
derivation is impossible (no cache, stale cache, finer or unknown
timeframe) is the market data provider called.

Responsibilities:
1. Lazy load of persisted cache entries (storage TTL aware)
2. Derivation of coarser timeframes from the cached base
3. Fetch de-duplication: at most one in-flight fetch per symbol:timeframe
4. Incremental refresh with bounded request size
5. Periodic eviction sweep owned by start()/stop()

Every public coroutine degrades to "best available data": provider and
storage failures are logged, never raised to the caller (fetch_and_cache
is the one exception and is used internally).
"""
import asyncio
import math
from typing import Any, Dict, List, Optional

from candle_pipeline.config import CandleCacheConfig, settings
from candle_pipeline.core.derivation import bar_duration_ms, is_cache_stale, try_derive
from candle_pipeline.core.enums import SystemState
from candle_pipeline.core.merge import merge_candles
from candle_pipeline.core.timeframes import normalize_timeframe
from candle_pipeline.integrations.base import KeyValueStorage, MarketDataProvider
from candle_pipeline.managers.time_provider import TimeProvider
from candle_pipeline.models.candles import BaseCandle, CacheStats, CandleCacheEntry
from candle_pipeline.logger import logger


# Rough in-memory footprint of one cached candle, for get_stats()
_BYTES_PER_CANDLE = 48


def _to_base_candle(candle: Any) -> BaseCandle:
    """Coerce provider output (BaseCandle subclass or dict) into a BaseCandle."""
    data = candle if isinstance(candle, dict) else candle.model_dump()
    return BaseCandle(
        time=int(data["time"]),
        open=float(data["open"]),
        high=float(data["high"]),
        low=float(data["low"]),
        close=float(data["close"]),
        volume=float(data.get("volume") or 0.0),
    )


class CandleCacheManager:
    """
    Symbol-keyed candle cache with timeframe derivation.

    The in-memory cache map and the in-flight registry are the only
    mutable shared structures; both are touched exclusively by this
    class. All mutations happen between awaits on a single event loop, so
    no locking is needed, but any await may observe an entry replaced by
    another coroutine.

    Usage:
        manager = CandleCacheManager(provider, storage)
        await manager.start()
        candles = await manager.get_candles("AAPL", "1h", 10)
        await manager.stop()
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        storage: KeyValueStorage,
        config: Optional[CandleCacheConfig] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        """Initialize the cache manager.

        Args:
            provider: Source of historical candles
            storage: Persistent key-value store for cache snapshots
            config: Tuning values (default: settings.CANDLE_CACHE)
            time_provider: Clock (default: wall clock)
        """
        self.provider = provider
        self.storage = storage
        self.config = config or settings.CANDLE_CACHE
        self.time_provider = time_provider or TimeProvider()

        self._cache: Dict[str, CandleCacheEntry] = {}
        self._inflight: Dict[str, "asyncio.Task[List[BaseCandle]]"] = {}

        self._sweep_task: Optional[asyncio.Task] = None
        self.state = SystemState.STOPPED

        logger.info(
            f"CandleCacheManager initialized: cache_ttl={self.config.cache_ttl_seconds}s, "
            f"storage_ttl={self.config.storage_ttl_seconds}s, "
            f"max_cached={self.config.max_cached_candles}"
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the periodic eviction sweep."""
        if self.state == SystemState.RUNNING:
            logger.warning("CandleCacheManager already running")
            return

        self._sweep_task = asyncio.get_running_loop().create_task(
            self._sweep_loop(), name="candle-cache-sweep"
        )
        self.state = SystemState.RUNNING
        logger.info(f"CandleCacheManager started (sweep every {self.config.sweep_interval_seconds}s)")

    async def stop(self) -> None:
        """Cancel the eviction sweep. In-flight fetches are left to finish."""
        if self.state == SystemState.STOPPED:
            return

        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.state = SystemState.STOPPED
        logger.info("CandleCacheManager stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                await self.cleanup()
            except Exception:
                logger.exception("Candle cache sweep failed")

    # =========================================================================
    # Storage helpers (best effort)
    # =========================================================================

    def _now(self) -> int:
        return self.time_provider.now_ms()

    def _storage_key(self, symbol: str) -> str:
        return f"{self.config.storage_prefix}{symbol}"

    async def ensure_cache_loaded(self, symbol: str) -> None:
        """Load a symbol's entry from storage unless it is already resident.

        Persisted entries older than the storage TTL are deleted instead of
        loaded. Read and parse failures count as a cache miss.
        """
        if symbol in self._cache:
            return

        key = self._storage_key(symbol)
        try:
            raw = await self.storage.get(key)
            if not raw:
                return
            entry = CandleCacheEntry.model_validate_json(raw)
        except Exception as e:
            logger.warning(f"Failed to load candle cache for {symbol}: {e}")
            return

        if self._now() - entry.last_update < self.config.storage_ttl_seconds * 1000:
            # A fetch may have completed while we were reading
            if symbol not in self._cache:
                self._cache[symbol] = entry
                logger.debug(
                    f"Loaded {len(entry.data)} {entry.base_timeframe} candles for {symbol} from storage"
                )
            return

        logger.debug(f"Persisted cache for {symbol} expired, removing")
        await self._remove_from_storage(symbol)

    async def _save_to_storage(self, symbol: str, entry: CandleCacheEntry) -> None:
        try:
            await self.storage.set(self._storage_key(symbol), entry.model_dump_json())
        except Exception as e:
            logger.warning(f"Failed to persist candle cache for {symbol}: {e}")

    async def _remove_from_storage(self, symbol: str) -> None:
        try:
            await self.storage.remove(self._storage_key(symbol))
        except Exception as e:
            logger.warning(f"Failed to remove persisted candle cache for {symbol}: {e}")

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_candles(
        self,
        symbol: str,
        timeframe: str,
        limit: Optional[int] = None
    ) -> List[BaseCandle]:
        """Get up to ``limit`` most recent candles for any timeframe.

        Derives from the cached base series when possible, otherwise
        fetches ``timeframe`` from the provider and caches it as the new
        base. If that fetch fails, whatever the (possibly stale) cache can
        still derive is returned, or an empty list.
        """
        if limit is None:
            limit = self.config.default_limit
        if limit <= 0:
            logger.debug(f"Non-positive limit {limit} for {symbol} {timeframe}, nothing to return")
            return []

        normalized = normalize_timeframe(timeframe)
        if normalized != timeframe:
            logger.debug(f"Normalized timeframe: {timeframe} → {normalized}")

        await self.ensure_cache_loaded(symbol)

        derived = try_derive(
            self._cache.get(symbol),
            normalized,
            limit,
            self._now(),
            self.config.cache_ttl_seconds * 1000,
        )
        if derived:
            logger.debug(f"Derived {symbol} {normalized} from cache ({len(derived)} candles)")
            return derived

        logger.debug(f"Cannot derive {symbol} {normalized}, fetching fresh data")
        try:
            return await self.fetch_and_cache(symbol, normalized, limit)
        except Exception as e:
            logger.error(f"Failed to fetch {symbol} {normalized}: {e}")
            fallback = try_derive(self._cache.get(symbol), normalized, limit, self._now(), None)
            return fallback or []

    def get_cache_entry(self, symbol: str) -> Optional[CandleCacheEntry]:
        """Resident cache entry for diagnostics (do not mutate)."""
        return self._cache.get(symbol)

    def get_stats(self) -> CacheStats:
        """Get cache statistics"""
        total_candles = sum(len(entry.data) for entry in self._cache.values())
        return CacheStats(
            symbols=len(self._cache),
            total_candles=total_candles,
            memory_usage=f"{round(total_candles * _BYTES_PER_CANDLE / 1024)} KB",
            inflight_requests=len(self._inflight),
        )

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch_and_cache(
        self,
        symbol: str,
        timeframe: str,
        limit: int
    ) -> List[BaseCandle]:
        """Fetch ``timeframe`` candles and install them as the symbol's base.

        Concurrent calls for the same symbol:timeframe share one provider
        request. The first caller owns the cache update; later callers just
        await the shared result.

        Raises:
            Exception: Whatever the provider raised
        """
        key = f"{symbol}:{timeframe}"

        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug(f"Joining in-flight fetch {key}")
            candles = await asyncio.shield(existing)
            return candles[-limit:] if limit > 0 else []

        task = asyncio.get_running_loop().create_task(
            self._do_fetch(symbol, timeframe, limit), name=f"candle-fetch-{key}"
        )
        self._inflight[key] = task

        try:
            # Shielded: a cancelled caller must not abort the shared fetch
            candles = await asyncio.shield(task)

            entry = CandleCacheEntry(
                symbol=symbol,
                base_timeframe=timeframe,
                data=list(candles),
                last_update=self._now(),
                last_candle=candles[-1].time if candles else 0,
            )
            self._cache[symbol] = entry
            await self._save_to_storage(symbol, entry)

            logger.info(f"Cached {len(candles)} {timeframe} candles for {symbol}")
            return candles[-limit:] if limit > 0 else []
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    async def _do_fetch(self, symbol: str, timeframe: str, limit: int) -> List[BaseCandle]:
        """Provider call with bounded output size; result is sorted and de-duplicated."""
        out_bars = max(1, min(self.config.max_out_bars, int(limit or 1)))
        logger.debug(f"Fetching {symbol} {timeframe} (out_bars: {out_bars})")

        raw = await self.provider.fetch_candles(
            symbol,
            timeframe,
            out_bars=out_bars,
            base_cushion=self.config.base_cushion,
        )

        by_time = {}
        for candle in raw:
            base = _to_base_candle(candle)
            by_time[base.time] = base
        return [by_time[t] for t in sorted(by_time)]

    async def preload_symbol(self, symbol: str) -> None:
        """Fetch a deep base series from which most timeframes can be derived."""
        base_timeframe = self.config.preload_timeframe
        logger.info(f"Pre-loading {symbol} with {base_timeframe} base data")

        try:
            await self.fetch_and_cache(symbol, base_timeframe, self.config.preload_limit)
        except Exception as e:
            logger.error(f"Failed to pre-load {symbol}: {e}")

    # =========================================================================
    # Incremental refresh
    # =========================================================================

    async def update_symbol(self, symbol: str) -> None:
        """Bring a symbol's base series up to date with minimal provider calls.

        - No cache: full preload
        - Refreshed within the quiet window: no-op
        - Newest candle older than the max incremental gap: full reload
        - Otherwise: fetch only enough recent bars to cover the gap, merge
        Any failure falls back to a full preload.
        """
        await self.ensure_cache_loaded(symbol)

        entry = self._cache.get(symbol)
        if entry is None:
            await self.preload_symbol(symbol)
            return

        now = self._now()
        if now - entry.last_update < self.config.update_quiet_window_seconds * 1000:
            return

        try:
            gap_ms = now - entry.last_candle
            if gap_ms > self.config.max_incremental_gap_seconds * 1000:
                logger.info(f"Gap of {gap_ms}ms for {symbol} exceeds incremental limit, reloading")
                await self.fetch_and_cache(symbol, entry.base_timeframe, self.config.preload_limit)
                return

            recent = await self._fetch_recent_candles(symbol, entry, gap_ms)
            if not recent:
                return

            # The entry may have been replaced while the fetch was pending
            current = self._cache.get(symbol)
            if current is None or current.base_timeframe != entry.base_timeframe:
                logger.debug(f"Cache for {symbol} replaced during update, discarding {len(recent)} candles")
                return

            appended = self.merge_candles(current, recent)
            await self._save_to_storage(symbol, current)
            logger.debug(f"Updated {symbol}: {appended} new candles ({len(recent)} fetched)")
        except Exception as e:
            logger.error(f"Failed to update {symbol}: {e}")
            await self.preload_symbol(symbol)

    async def _fetch_recent_candles(
        self,
        symbol: str,
        entry: CandleCacheEntry,
        gap_ms: int
    ) -> List[BaseCandle]:
        bar_ms = bar_duration_ms(entry.base_timeframe)
        bars_needed = max(1, math.ceil(gap_ms / bar_ms) + 1)
        recent_limit = min(self.config.max_recent_bars, bars_needed)
        return await self._do_fetch(symbol, entry.base_timeframe, recent_limit)

    def merge_candles(self, entry: CandleCacheEntry, new_candles: List[BaseCandle]) -> int:
        """Merge fetched candles into ``entry`` (see core.merge.merge_candles)."""
        return merge_candles(
            entry,
            new_candles,
            now_ms=self._now(),
            max_candles=self.config.max_cached_candles,
        )

    # =========================================================================
    # Eviction
    # =========================================================================

    async def cleanup(self) -> int:
        """Evict entries not refreshed within the cache TTL.

        Returns:
            Number of evicted symbols
        """
        now = self._now()
        ttl_ms = self.config.cache_ttl_seconds * 1000
        stale = [
            (symbol, entry)
            for symbol, entry in self._cache.items()
            if is_cache_stale(entry, now, ttl_ms)
        ]

        evicted = 0
        for symbol, entry in stale:
            # Skip symbols refreshed since the scan
            if self._cache.get(symbol) is not entry:
                continue
            del self._cache[symbol]
            await self._remove_from_storage(symbol)
            evicted += 1
            logger.info(f"Cleaned up stale cache for {symbol}")

        return evicted
