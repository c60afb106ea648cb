"""Alpaca websocket streaming transport.

Streams trades (ticks) and minute bars from Alpaca's v2 market data
websocket and fans them out as ``on_price`` / ``on_candle`` callbacks.

``run`` takes an ``asyncio.Event`` cancel token so the owner can stop the
stream cooperatively.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Union

import asyncio
import json

import websockets

from candle_pipeline.config import AlpacaConfig, settings
from candle_pipeline.core.channel import ListenerChannel
from candle_pipeline.core.exceptions import ProviderError
from candle_pipeline.integrations.base import (
    CandleListener,
    PriceListener,
    RealtimeTransport,
    Unsubscribe,
)
from candle_pipeline.models.candles import AggregatedCandle
from candle_pipeline.logger import logger


@dataclass
class StreamTick:
    symbol: str
    timestamp: int
    price: float
    size: float


@dataclass
class StreamBar:
    symbol: str
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_candle(self, timeframe: str = "1m") -> AggregatedCandle:
        return AggregatedCandle(
            symbol=self.symbol,
            timeframe=timeframe,
            time=self.timestamp,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            is_complete=True,
        )


StreamEvent = Union[StreamTick, StreamBar]


def _to_epoch_ms(ts: str) -> int:
    return int(datetime.fromisoformat(ts.replace("Z", "+00:00")).timestamp() * 1000)


def parse_stream_message(raw: Union[str, bytes]) -> List[StreamEvent]:
    """Parse one websocket frame into trade and bar events.

    Alpaca sends a JSON list of events per frame. Control messages
    (success, subscription, error) and malformed events are skipped.
    """
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Skipping non-JSON Alpaca stream message: {raw!r}")
        return []

    events = msg if isinstance(msg, list) else [msg]
    parsed: List[StreamEvent] = []

    for ev in events:
        if not isinstance(ev, dict):
            continue
        kind = ev.get("T")
        try:
            if kind == "t":  # trade
                parsed.append(StreamTick(
                    symbol=ev["S"],
                    timestamp=_to_epoch_ms(ev["t"]),
                    price=float(ev["p"]),
                    size=float(ev.get("s", 0.0)),
                ))
            elif kind == "b":  # minute bar
                parsed.append(StreamBar(
                    symbol=ev["S"],
                    timestamp=_to_epoch_ms(ev["t"]),
                    open=float(ev["o"]),
                    high=float(ev["h"]),
                    low=float(ev["l"]),
                    close=float(ev["c"]),
                    volume=float(ev.get("v", 0.0)),
                ))
            elif kind == "error":
                logger.error(f"Alpaca stream error: {ev}")
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Error parsing Alpaca stream event {ev}: {exc}")

    return parsed


class AlpacaRealtimeTransport(RealtimeTransport):
    """RealtimeTransport over Alpaca's trades + bars websocket stream."""

    def __init__(self, config: Optional[AlpacaConfig] = None) -> None:
        self.config = config or settings.ALPACA
        self._price_channel: ListenerChannel[PriceListener] = ListenerChannel("price")
        self._candle_channel: ListenerChannel[CandleListener] = ListenerChannel("candle")

    def on_price(self, listener: PriceListener) -> Unsubscribe:
        return self._price_channel.subscribe(listener)

    def on_candle(self, listener: CandleListener) -> Unsubscribe:
        return self._candle_channel.subscribe(listener)

    def dispatch(self, events: Iterable[StreamEvent]) -> None:
        """Fan parsed events out to the registered listeners."""
        for event in events:
            if isinstance(event, StreamTick):
                self._price_channel.publish(event.symbol, event.price, event.timestamp)
            else:
                self._candle_channel.publish(event.symbol, event.to_candle())

    async def _connect(self):
        if not self.config.api_key_id or not self.config.api_secret_key:
            raise ProviderError("Alpaca API credentials are missing for streaming")

        logger.info(f"Connecting to Alpaca data stream: {self.config.stream_url}")
        ws = await websockets.connect(self.config.stream_url, ping_interval=20, ping_timeout=20)

        # Server greets with [{"T":"success","msg":"connected"}] before auth
        await ws.recv()
        await ws.send(json.dumps({
            "action": "auth",
            "key": self.config.api_key_id,
            "secret": self.config.api_secret_key,
        }))
        auth_resp = json.loads(await ws.recv())
        if not any(item.get("T") == "success" and item.get("msg") == "authenticated"
                   for item in auth_resp if isinstance(item, dict)):
            await ws.close()
            raise ProviderError(f"Alpaca stream auth failed: {auth_resp}")

        return ws

    async def run(self, symbols: Iterable[str], cancel_event: asyncio.Event) -> None:
        """Stream trades and bars for ``symbols`` until ``cancel_event`` is set."""
        syms = [s.upper() for s in symbols]
        if not syms:
            return

        ws = await self._connect()
        try:
            await ws.send(json.dumps({
                "action": "subscribe",
                "trades": syms,
                "bars": syms,
                "quotes": [],
            }))
            logger.info(f"Subscribed to Alpaca trades and bars for {', '.join(syms)}")

            async for raw in ws:
                if cancel_event.is_set():
                    break
                self.dispatch(parse_stream_message(raw))
        finally:
            await ws.close()
            logger.info("Alpaca data stream closed")
