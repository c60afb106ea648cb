"""
Integration tests for CandleCacheManager with a fake provider and real storage backends.

Tests verify:
- Fetch once, then derive coarser timeframes from the cached base
- Concurrent requests share one provider call
- TTL staleness, eviction and persisted-entry expiry
- Storage and provider failures degrade to best available data
- Incremental updates (merge, large-gap reload, quiet window)
"""

import asyncio

import pytest

from candle_pipeline.core.exceptions import ProviderError
from candle_pipeline.managers.candle_manager import CandleCacheManager
from candle_pipeline.models.candles import CandleCacheEntry

from tests.fixtures import BASE_TIME, HOUR_MS, MINUTE_MS, make_candles


NOW = BASE_TIME + 10 * HOUR_MS


@pytest.fixture
def manager(fake_provider, memory_storage, cache_config, time_provider):
    return CandleCacheManager(fake_provider, memory_storage, cache_config, time_provider)


def _install(manager, symbol, base_timeframe, data, last_update):
    manager._cache[symbol] = CandleCacheEntry(
        symbol=symbol,
        base_timeframe=base_timeframe,
        data=data,
        last_update=last_update,
        last_candle=data[-1].time if data else 0,
    )


class TestGetCandles:
    """Test fetch-then-derive behavior."""

    @pytest.mark.asyncio
    async def test_fetch_then_derive_without_new_fetch(self, manager, fake_provider):
        hourly = await manager.get_candles("AAPL", "1h", 10)

        assert len(hourly) == 10
        assert len(fake_provider.calls) == 1
        assert fake_provider.calls[0]["out_bars"] == 10
        assert fake_provider.calls[0]["base_cushion"] == 1.05

        four_hour = await manager.get_candles("AAPL", "4h", 5)

        assert len(fake_provider.calls) == 1, "4h must be derived from the cached 1h base"
        assert len(four_hour) == 3
        assert four_hour[0].time == hourly[0].time
        assert four_hour[0].open == hourly[0].open
        assert four_hour[0].close == hourly[3].close
        assert four_hour[0].high == max(c.high for c in hourly[:4])

    @pytest.mark.asyncio
    async def test_normalizes_timeframe(self, manager, fake_provider):
        await manager.get_candles("AAPL", "1HR", 5)

        assert fake_provider.calls[0]["timeframe"] == "1h"
        assert manager.get_cache_entry("AAPL").base_timeframe == "1h"

    @pytest.mark.asyncio
    async def test_finer_timeframe_refetches_and_replaces_base(self, manager, fake_provider):
        await manager.get_candles("AAPL", "1h", 10)
        await manager.get_candles("AAPL", "5m", 10)

        assert [call["timeframe"] for call in fake_provider.calls] == ["1h", "5m"]
        assert manager.get_cache_entry("AAPL").base_timeframe == "5m"

    @pytest.mark.asyncio
    async def test_default_limit(self, manager, fake_provider, cache_config):
        candles = await manager.get_candles("AAPL", "5m")
        assert len(candles) == cache_config.default_limit

    @pytest.mark.asyncio
    async def test_non_positive_limit_keeps_cached_base(self, manager, fake_provider):
        await manager.get_candles("AAPL", "1m", 500)

        assert await manager.get_candles("AAPL", "1h", 0) == []
        assert await manager.get_candles("AAPL", "1h", -5) == []

        entry = manager.get_cache_entry("AAPL")
        assert len(fake_provider.calls) == 1
        assert entry.base_timeframe == "1m"
        assert len(entry.data) == 500

    @pytest.mark.asyncio
    async def test_out_bars_capped(self, manager, fake_provider):
        await manager.get_candles("AAPL", "1m", 5000)
        assert fake_provider.calls[0]["out_bars"] == 1200

    @pytest.mark.asyncio
    async def test_stale_cache_refetches(self, manager, fake_provider, time_provider):
        await manager.get_candles("AAPL", "1h", 10)
        time_provider.advance(30 * MINUTE_MS + 1)

        await manager.get_candles("AAPL", "4h", 5)

        assert len(fake_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_provider_failure_returns_stale_data(self, manager, fake_provider, time_provider):
        await manager.get_candles("AAPL", "1h", 10)
        time_provider.advance(HOUR_MS)
        fake_provider.error = ProviderError("upstream down")

        candles = await manager.get_candles("AAPL", "4h", 5)

        assert len(candles) == 3

    @pytest.mark.asyncio
    async def test_provider_failure_without_cache_returns_empty(self, manager, fake_provider):
        fake_provider.error = ProviderError("upstream down")

        assert await manager.get_candles("AAPL", "1h", 10) == []
        assert manager.get_cache_entry("AAPL") is None


class TestFetchDeduplication:
    """Test the in-flight registry."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self, manager, fake_provider):
        fake_provider.gate = asyncio.Event()

        pending = asyncio.gather(
            manager.get_candles("AAPL", "1h", 10),
            manager.get_candles("AAPL", "1h", 4),
            manager.fetch_and_cache("AAPL", "1h", 10),
        )
        await asyncio.sleep(0)
        assert manager.get_stats().inflight_requests == 1

        fake_provider.gate.set()
        first, second, third = await pending

        assert len(fake_provider.calls) == 1
        assert len(first) == 10
        assert second == first[-4:]
        assert third == first
        assert manager.get_stats().inflight_requests == 0

    @pytest.mark.asyncio
    async def test_failed_fetch_clears_registry(self, manager, fake_provider):
        fake_provider.error = ProviderError("boom")

        with pytest.raises(ProviderError):
            await manager.fetch_and_cache("AAPL", "1h", 10)

        assert manager.get_stats().inflight_requests == 0

        fake_provider.error = None
        assert len(await manager.fetch_and_cache("AAPL", "1h", 10)) == 10

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_shared_fetch(self, manager, fake_provider):
        fake_provider.gate = asyncio.Event()

        owner = asyncio.ensure_future(manager.fetch_and_cache("AAPL", "1h", 10))
        await asyncio.sleep(0)
        joiner = asyncio.ensure_future(manager.fetch_and_cache("AAPL", "1h", 10))
        await asyncio.sleep(0)

        owner.cancel()
        await asyncio.sleep(0)
        fake_provider.gate.set()

        assert len(await joiner) == 10
        assert len(fake_provider.calls) == 1


class TestStorage:
    """Test persistence through KeyValueStorage."""

    @pytest.mark.asyncio
    async def test_entry_persisted_and_reloaded(self, fake_provider, memory_storage, cache_config, time_provider):
        first = CandleCacheManager(fake_provider, memory_storage, cache_config, time_provider)
        await first.get_candles("AAPL", "1h", 10)
        assert memory_storage.keys() == ["candles_cache_AAPL"]

        second = CandleCacheManager(fake_provider, memory_storage, cache_config, time_provider)
        candles = await second.get_candles("AAPL", "4h", 5)

        assert len(candles) == 3
        assert len(fake_provider.calls) == 1, "Second manager must load from storage"

    @pytest.mark.asyncio
    async def test_expired_persisted_entry_removed(self, fake_provider, memory_storage, cache_config, time_provider):
        first = CandleCacheManager(fake_provider, memory_storage, cache_config, time_provider)
        await first.get_candles("AAPL", "1h", 10)

        time_provider.advance(HOUR_MS)
        second = CandleCacheManager(fake_provider, memory_storage, cache_config, time_provider)
        await second.ensure_cache_loaded("AAPL")

        assert second.get_cache_entry("AAPL") is None
        assert memory_storage.keys() == []

    @pytest.mark.asyncio
    async def test_corrupt_blob_is_a_miss(self, manager, memory_storage):
        await memory_storage.set("candles_cache_AAPL", "{not json")

        await manager.ensure_cache_loaded("AAPL")

        assert manager.get_cache_entry("AAPL") is None

    @pytest.mark.asyncio
    async def test_failing_storage_degrades(self, fake_provider, failing_storage, cache_config, time_provider):
        manager = CandleCacheManager(fake_provider, failing_storage, cache_config, time_provider)

        candles = await manager.get_candles("AAPL", "1h", 10)
        derived = await manager.get_candles("AAPL", "4h", 5)

        assert len(candles) == 10
        assert len(derived) == 3
        assert failing_storage.attempts >= 2

    @pytest.mark.asyncio
    async def test_sql_round_trip(self, fake_provider, sql_storage, cache_config, time_provider):
        first = CandleCacheManager(fake_provider, sql_storage, cache_config, time_provider)
        original = await first.get_candles("AAPL", "1h", 10)

        second = CandleCacheManager(fake_provider, sql_storage, cache_config, time_provider)
        await second.ensure_cache_loaded("AAPL")

        entry = second.get_cache_entry("AAPL")
        assert entry is not None
        assert entry.data == original


class TestCleanup:
    """Test TTL eviction and the sweep lifecycle."""

    @pytest.mark.asyncio
    async def test_evicts_only_stale_entries(self, manager, memory_storage, time_provider):
        await manager.get_candles("AAPL", "1h", 10)
        time_provider.advance(20 * MINUTE_MS)
        await manager.get_candles("MSFT", "1h", 10)
        time_provider.advance(15 * MINUTE_MS)

        evicted = await manager.cleanup()

        assert evicted == 1
        assert manager.get_cache_entry("AAPL") is None
        assert manager.get_cache_entry("MSFT") is not None
        assert memory_storage.keys() == ["candles_cache_MSFT"]

    @pytest.mark.asyncio
    async def test_stats(self, manager):
        await manager.get_candles("AAPL", "1h", 10)
        await manager.get_candles("MSFT", "1h", 20)

        stats = manager.get_stats()

        assert stats.symbols == 2
        assert stats.total_candles == 30
        assert stats.memory_usage.endswith("KB")

    @pytest.mark.asyncio
    async def test_start_stop_owns_sweep_task(self, manager):
        await manager.start()
        assert manager._sweep_task is not None and not manager._sweep_task.done()

        await manager.stop()
        assert manager._sweep_task is None


class TestPreloadSymbol:

    @pytest.mark.asyncio
    async def test_preload_installs_base_series(self, manager, fake_provider, memory_storage):
        await manager.preload_symbol("AAPL")

        entry = manager.get_cache_entry("AAPL")
        assert entry.base_timeframe == "5m"
        assert len(entry.data) == 1200
        assert await memory_storage.get("candles_cache_AAPL") is not None

    @pytest.mark.asyncio
    async def test_preload_failure_leaves_cache_empty(self, manager, fake_provider):
        fake_provider.error = ProviderError("down")

        await manager.preload_symbol("AAPL")

        assert manager.get_cache_entry("AAPL") is None
        assert manager.get_stats().inflight_requests == 0


class TestUpdateSymbol:
    """Test incremental refresh."""

    @pytest.mark.asyncio
    async def test_no_cache_preloads(self, manager, fake_provider, cache_config):
        await manager.update_symbol("AAPL")

        assert fake_provider.calls[0]["timeframe"] == cache_config.preload_timeframe
        assert fake_provider.calls[0]["out_bars"] == 1200
        assert manager.get_cache_entry("AAPL").base_timeframe == "5m"

    @pytest.mark.asyncio
    async def test_quiet_window_is_noop(self, manager, fake_provider, time_provider):
        _install(manager, "AAPL", "5m", make_candles(10, 5 * MINUTE_MS), last_update=NOW - 2_000)

        await manager.update_symbol("AAPL")

        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_small_gap_fetches_recent_and_merges(self, manager, fake_provider, memory_storage):
        # Cached series ends 30 minutes before NOW
        last = NOW - 30 * MINUTE_MS
        data = make_candles(10, 5 * MINUTE_MS, start=last - 9 * 5 * MINUTE_MS)
        _install(manager, "AAPL", "5m", data, last_update=NOW - HOUR_MS)

        await manager.update_symbol("AAPL")

        call = fake_provider.calls[0]
        assert call["timeframe"] == "5m"
        assert call["out_bars"] == 7  # ceil(30m / 5m) + 1

        entry = manager.get_cache_entry("AAPL")
        times = [c.time for c in entry.data]
        assert times == sorted(set(times))
        assert entry.last_candle == NOW
        assert len(entry.data) == 16
        assert entry.last_update == NOW
        assert memory_storage.keys() == ["candles_cache_AAPL"]

    @pytest.mark.asyncio
    async def test_recent_request_capped(self, manager, fake_provider):
        last = NOW - 20 * HOUR_MS
        _install(manager, "AAPL", "5m", make_candles(3, 5 * MINUTE_MS, start=last - 10 * MINUTE_MS), last_update=NOW - HOUR_MS)

        await manager.update_symbol("AAPL")

        assert fake_provider.calls[0]["out_bars"] == 100

    @pytest.mark.asyncio
    async def test_large_gap_reloads(self, manager, fake_provider):
        stale_start = NOW - 3 * 24 * HOUR_MS
        _install(manager, "AAPL", "1h", make_candles(5, HOUR_MS, start=stale_start), last_update=NOW - HOUR_MS)

        await manager.update_symbol("AAPL")

        call = fake_provider.calls[0]
        assert call["timeframe"] == "1h"
        assert call["out_bars"] == 1200
        entry = manager.get_cache_entry("AAPL")
        assert len(entry.data) == 1200, "Reload replaces the entry instead of merging"
        assert entry.last_candle == NOW

    @pytest.mark.asyncio
    async def test_failed_update_falls_back_to_preload(self, manager, fake_provider):
        _install(manager, "AAPL", "5m", make_candles(3, 5 * MINUTE_MS, start=NOW - HOUR_MS), last_update=NOW - HOUR_MS)
        fake_provider.error = ProviderError("boom")

        await manager.update_symbol("AAPL")

        assert [call["out_bars"] for call in fake_provider.calls] == [11, 1200]
        assert manager.get_cache_entry("AAPL") is not None
