"""
RealtimeCandleAggregator - live candles from a tick stream

Maintains one forming candle per (symbol, timeframe) and publishes an
event every time it changes:

    Uninitialized → Forming(is_complete=False) → Complete(is_complete=True)
                         ↑                              │
                         └──────── next bucket ─────────┘

A candle completes either when a tick for a later bucket arrives or when
its boundary-check task sees the wall clock pass the bucket end (quiet
symbols still close bars on schedule). Each candle completes exactly once
and is immutable afterwards.

Placeholders installed by ``initialize_candle`` carry sentinel extrema
(open=0, high=0, low=+inf, close=0) until the first real tick. A
placeholder that never saw a tick is dropped at rollover, never emitted.

Independent of the live state, accepted ticks are kept in a bounded
per-symbol buffer so ad-hoc timeframes can be rebuilt on demand.
"""
import asyncio
import math
from typing import Callable, Dict, List, Optional, Tuple, Union

from candle_pipeline.config import AggregatorConfig, settings
from candle_pipeline.core.channel import ListenerChannel
from candle_pipeline.core.timeframes import bucket_start, timeframe_to_ms
from candle_pipeline.integrations.base import CandleListener, RealtimeTransport, Unsubscribe
from candle_pipeline.managers.time_provider import TimeProvider
from candle_pipeline.models.candles import (
    AggregatedCandle,
    AggregatorStats,
    BaseCandle,
    TickRecord,
)
from candle_pipeline.logger import logger


CandleKey = Tuple[str, str]


class RealtimeCandleAggregator:
    """
    Tick-to-candle aggregator with scheduled boundary completion.

    State is a flat map keyed by (symbol, timeframe); boundary-check tasks
    use the same key. Nothing here is shared with the cache manager.
    """

    def __init__(
        self,
        config: Optional[AggregatorConfig] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        """Initialize the aggregator.

        Args:
            config: Tuning values (default: settings.AGGREGATOR)
            time_provider: Clock used for placeholders and boundary checks
        """
        self.config = config or settings.AGGREGATOR
        self.time_provider = time_provider or TimeProvider()

        self._candles: Dict[CandleKey, AggregatedCandle] = {}
        self._timers: Dict[CandleKey, asyncio.Task] = {}
        self._ticks: Dict[str, List[TickRecord]] = {}
        self._updates: ListenerChannel[CandleListener] = ListenerChannel("candle update")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def on_candle_update(self, listener: CandleListener) -> Unsubscribe:
        """Register ``listener(symbol, candle)``; returns an unsubscribe handle."""
        return self._updates.subscribe(listener)

    def _emit(self, candle: AggregatedCandle) -> None:
        self._updates.publish(candle.symbol, candle)

    def attach(self, transport: RealtimeTransport) -> Unsubscribe:
        """Feed this aggregator from ``transport``; returns a detach handle."""
        detach_price = transport.on_price(
            lambda symbol, price, timestamp: self.on_tick(symbol, price, timestamp)
        )
        detach_candle = transport.on_candle(self.on_provider_candle)

        def detach() -> None:
            detach_price()
            detach_candle()

        return detach

    # =========================================================================
    # Tracking lifecycle
    # =========================================================================

    def initialize_candle(
        self,
        symbol: str,
        timeframe: str,
        seed: Optional[BaseCandle] = None
    ) -> AggregatedCandle:
        """Start (or restart) tracking ``timeframe`` for ``symbol``.

        Args:
            symbol: Stock symbol
            timeframe: Timeframe label, any format timeframe_to_ms accepts
            seed: Optional current candle (e.g. last bar from history); its
                time is aligned down to the bucket boundary

        Returns:
            The installed forming candle
        """
        timeframe_ms = timeframe_to_ms(timeframe)

        if seed is not None:
            candle = AggregatedCandle(
                **seed.model_dump(include={"open", "high", "low", "close", "volume"}),
                symbol=symbol,
                timeframe=timeframe,
                time=bucket_start(seed.time, timeframe_ms),
                is_complete=False,
            )
        else:
            candle = AggregatedCandle.placeholder(
                symbol,
                timeframe,
                bucket_start(self.time_provider.now_ms(), timeframe_ms),
            )

        self._candles[(symbol, timeframe)] = candle
        self._arm_timer(symbol, timeframe, timeframe_ms)

        logger.debug(
            f"Tracking {symbol} {timeframe} from {candle.time} "
            f"({'seeded' if seed is not None else 'placeholder'})"
        )
        return candle

    def _arm_timer(self, symbol: str, timeframe: str, timeframe_ms: int) -> None:
        key = (symbol, timeframe)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()

        interval_seconds = min(timeframe_ms / 10, self.config.max_check_interval_seconds * 1000) / 1000

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop, boundary check for {symbol} {timeframe} not scheduled")
            return

        self._timers[key] = loop.create_task(
            self._boundary_loop(symbol, timeframe, interval_seconds),
            name=f"candle-boundary-{symbol}-{timeframe}",
        )

    async def _boundary_loop(self, symbol: str, timeframe: str, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.check_candle_completion(symbol, timeframe)
            except Exception:
                logger.exception(f"Boundary check failed for {symbol} {timeframe}")

    def cleanup(self, symbol: str, timeframe: Optional[str] = None) -> None:
        """Stop tracking one timeframe, or the whole symbol when omitted.

        Whole-symbol cleanup also drops the symbol's tick buffer.
        """
        if timeframe is not None:
            keys = [(symbol, timeframe)]
        else:
            keys = [key for key in {*self._candles, *self._timers} if key[0] == symbol]
            self._ticks.pop(symbol, None)

        for key in keys:
            self._candles.pop(key, None)
            task = self._timers.pop(key, None)
            if task is not None:
                task.cancel()

        logger.debug(f"Cleaned up {symbol} {timeframe or '(all timeframes)'}")

    def close(self) -> None:
        """Cancel every boundary-check task."""
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()

    # =========================================================================
    # Ingestion
    # =========================================================================

    def _is_valid_tick(self, symbol: str, price: float, timestamp: float) -> bool:
        try:
            if not math.isfinite(price) or price <= 0 or not math.isfinite(timestamp):
                return False
        except TypeError:
            return False

        recent = self._ticks.get(symbol)
        if recent:
            window = recent[-self.config.validation_window:]
            average = sum(tick.price for tick in window) / len(window)
            if abs(price - average) / average > self.config.max_deviation:
                return False

        return True

    def _buffer_tick(self, symbol: str, tick: TickRecord) -> None:
        buffer = self._ticks.setdefault(symbol, [])
        buffer.append(tick)
        if len(buffer) > self.config.tick_buffer_max:
            self._ticks[symbol] = buffer[-self.config.tick_buffer_keep:]

    def on_tick(
        self,
        symbol: str,
        price: float,
        timestamp: int,
        volume: Optional[float] = None
    ) -> bool:
        """Ingest one price tick.

        Returns:
            True if the tick was accepted, False if it was dropped by
            validation (non-finite, non-positive, or >max_deviation away
            from the recent average). Dropped ticks change nothing.
        """
        if not self._is_valid_tick(symbol, price, timestamp):
            logger.debug(f"Rejected tick {symbol} @ {price} ({timestamp})")
            return False

        price = float(price)
        timestamp = int(timestamp)
        self._buffer_tick(symbol, TickRecord(price=price, timestamp=timestamp, volume=volume))

        for timeframe in self.config.auto_track_timeframes:
            if (symbol, timeframe) not in self._candles:
                self._track_from_tick(symbol, timeframe, timestamp)

        for timeframe in self.get_tracked_timeframes(symbol):
            self._apply_tick(symbol, timeframe, price, timestamp)

        return True

    def _track_from_tick(self, symbol: str, timeframe: str, timestamp: int) -> None:
        """Implicit tracking: placeholder at the tick's own bucket."""
        timeframe_ms = timeframe_to_ms(timeframe)
        self._candles[(symbol, timeframe)] = AggregatedCandle.placeholder(
            symbol, timeframe, bucket_start(timestamp, timeframe_ms)
        )
        self._arm_timer(symbol, timeframe, timeframe_ms)

    def _apply_tick(self, symbol: str, timeframe: str, price: float, timestamp: int) -> None:
        key = (symbol, timeframe)
        current = self._candles.get(key)
        if current is None:
            return

        candle_start = bucket_start(timestamp, timeframe_to_ms(timeframe))

        if candle_start == current.time:
            if current.is_complete:
                return  # completed candles are immutable

            if current.is_placeholder:
                updated = current.model_copy(
                    update={"open": price, "high": price, "low": price, "close": price}
                )
            else:
                updated = current.model_copy(update={
                    "high": max(current.high, price),
                    "low": min(current.low, price),
                    "close": price,
                })
            self._candles[key] = updated
            self._emit(updated)

        elif candle_start > current.time:
            if not current.is_complete and not current.is_placeholder:
                self._emit(current.model_copy(update={"is_complete": True}))

            previous_close = current.close if current.close > 0 else price
            fresh = AggregatedCandle(
                symbol=symbol,
                timeframe=timeframe,
                time=candle_start,
                open=previous_close,
                high=price,
                low=price,
                close=price,
                volume=0.0,
                is_complete=False,
            )
            self._candles[key] = fresh
            self._emit(fresh)

        # Ticks for an earlier bucket are late arrivals and ignored

    def on_provider_candle(
        self,
        symbol: str,
        candle: Union[AggregatedCandle, BaseCandle],
        timeframe: Optional[str] = None
    ) -> AggregatedCandle:
        """Accept a finished candle pushed by the provider.

        The candle is emitted as complete. It replaces the tracked state
        unless the tracked candle is already for a later bucket (a bar
        delivered after ticks opened the next period must not wipe the
        forming candle). A bar for an untracked pair starts tracking it,
        with a boundary check like any other tracked pair.
        """
        timeframe = timeframe or getattr(candle, "timeframe", None) or "1m"
        finished = AggregatedCandle(
            **candle.model_dump(include={"time", "open", "high", "low", "close", "volume"}),
            symbol=symbol,
            timeframe=timeframe,
            is_complete=True,
        )

        key = (symbol, timeframe)
        current = self._candles.get(key)
        if current is None or finished.time >= current.time:
            self._candles[key] = finished
        if key not in self._timers:
            self._arm_timer(symbol, timeframe, timeframe_to_ms(timeframe))

        self._emit(finished)
        return finished

    def check_candle_completion(self, symbol: str, timeframe: str) -> Optional[AggregatedCandle]:
        """Complete the forming candle if the clock has passed its bucket end.

        A touched candle is stored and emitted as complete; the next tick
        opens the following period from its close. An untouched
        placeholder is silently replaced by a placeholder for the current
        bucket.

        Returns:
            The completed candle, or None if nothing was emitted
        """
        key = (symbol, timeframe)
        current = self._candles.get(key)
        if current is None or current.is_complete:
            return None

        timeframe_ms = timeframe_to_ms(timeframe)
        now = self.time_provider.now_ms()
        if now < current.time + timeframe_ms:
            return None

        if current.is_placeholder:
            self._candles[key] = AggregatedCandle.placeholder(
                symbol, timeframe, bucket_start(now, timeframe_ms)
            )
            return None

        completed = current.model_copy(update={"is_complete": True})
        self._candles[key] = completed
        self._emit(completed)
        return completed

    # =========================================================================
    # Queries
    # =========================================================================

    def get_current_candle(self, symbol: str, timeframe: str) -> Optional[AggregatedCandle]:
        return self._candles.get((symbol, timeframe))

    def get_tracked_timeframes(self, symbol: str) -> List[str]:
        return [tf for (sym, tf) in self._candles if sym == symbol]

    def get_ticks(self, symbol: str) -> List[TickRecord]:
        return list(self._ticks.get(symbol, ()))

    def get_stats(self) -> AggregatorStats:
        return AggregatorStats(
            symbols=len({sym for sym, _ in self._candles}),
            tracked_pairs=len(self._candles),
            buffered_ticks=sum(len(ticks) for ticks in self._ticks.values()),
            listeners=len(self._updates),
            active_timers=sum(1 for task in self._timers.values() if not task.done()),
        )

    def build_candles_from_ticks(
        self,
        symbol: str,
        timeframe: str,
        count: int = 100
    ) -> List[AggregatedCandle]:
        """Rebuild candles for an arbitrary timeframe from buffered ticks.

        Independent of the live state: buckets are computed from scratch
        over the chronologically sorted buffer.

        Returns:
            Up to ``count`` most recent candles, oldest first
        """
        ticks = self._ticks.get(symbol)
        if not ticks or count <= 0:
            return []

        timeframe_ms = timeframe_to_ms(timeframe)
        buckets: Dict[int, AggregatedCandle] = {}

        for tick in sorted(ticks, key=lambda t: t.timestamp):
            start = bucket_start(tick.timestamp, timeframe_ms)
            candle = buckets.get(start)
            if candle is None:
                buckets[start] = AggregatedCandle(
                    symbol=symbol,
                    timeframe=timeframe,
                    time=start,
                    open=tick.price,
                    high=tick.price,
                    low=tick.price,
                    close=tick.price,
                    volume=tick.volume or 0.0,
                    is_complete=True,
                )
            else:
                candle.high = max(candle.high, tick.price)
                candle.low = min(candle.low, tick.price)
                candle.close = tick.price
                candle.volume += tick.volume or 0.0

        return [buckets[start] for start in sorted(buckets)][-count:]
