"""Alpaca Data Integration

Fetches historical candles from the Alpaca v2 stock bars REST endpoint and
maps them into BaseCandle objects (epoch-ms open time).
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import httpx

from candle_pipeline.config import AlpacaConfig, settings
from candle_pipeline.core.exceptions import ProviderError
from candle_pipeline.core.timeframes import timeframe_minutes
from candle_pipeline.integrations.base import MarketDataProvider
from candle_pipeline.models.candles import BaseCandle
from candle_pipeline.logger import logger


# Canonical label -> Alpaca timeframe parameter
ALPACA_TIMEFRAMES: Dict[str, str] = {
    "1m": "1Min",
    "2m": "2Min",
    "3m": "3Min",
    "5m": "5Min",
    "15m": "15Min",
    "30m": "30Min",
    "1h": "1Hour",
    "2h": "2Hour",
    "4h": "4Hour",
    "1D": "1Day",
    "1W": "1Week",
    "1M": "1Month",
}

# US equities trade ~6.5h on weekdays, so intraday lookbacks need to span
# far more wall-clock time than out_bars * bar width.
_INTRADAY_GAP_FACTOR = 6.0
_DAILY_GAP_FACTOR = 1.6
_MAX_PAGE_LIMIT = 10000


def parse_alpaca_bar(bar: Dict) -> BaseCandle:
    """Convert one Alpaca bar payload (t/o/h/l/c/v) into a BaseCandle."""
    ts = datetime.fromisoformat(bar["t"].replace("Z", "+00:00"))
    return BaseCandle(
        time=int(ts.timestamp() * 1000),
        open=float(bar["o"]),
        high=float(bar["h"]),
        low=float(bar["l"]),
        close=float(bar["c"]),
        volume=float(bar.get("v") or 0.0),
    )


class AlpacaCandleProvider(MarketDataProvider):
    """MarketDataProvider backed by Alpaca's historical bars API.

    Bars are requested newest-first and paged until ``out_bars`` have been
    collected, then returned oldest-first.
    """

    def __init__(
        self,
        config: Optional[AlpacaConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Args:
            config: Alpaca credentials and endpoints (default: settings.ALPACA)
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.config = config or settings.ALPACA
        self._transport = transport

    @property
    def source_name(self) -> str:
        return "alpaca"

    def _lookback_start(self, timeframe: str, out_bars: int, base_cushion: float) -> datetime:
        minutes = timeframe_minutes(timeframe) or 1
        gap_factor = _INTRADAY_GAP_FACTOR if minutes < 1440 else _DAILY_GAP_FACTOR
        span_minutes = out_bars * minutes * max(base_cushion, 1.0) * gap_factor
        return datetime.now(timezone.utc) - timedelta(minutes=span_minutes)

    async def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        *,
        out_bars: int,
        base_cushion: float = 1.0
    ) -> List[BaseCandle]:
        if not self.config.api_key_id or not self.config.api_secret_key:
            raise ProviderError("Alpaca API credentials are missing")

        alpaca_tf = ALPACA_TIMEFRAMES.get(timeframe)
        if alpaca_tf is None:
            raise ProviderError(f"Timeframe '{timeframe}' is not supported by Alpaca")

        symbol_upper = symbol.upper()
        url = f"{self.config.data_base_url.rstrip('/')}/v2/stocks/{symbol_upper}/bars"
        headers = {
            "APCA-API-KEY-ID": self.config.api_key_id,
            "APCA-API-SECRET-KEY": self.config.api_secret_key,
        }
        params: Dict[str, object] = {
            "timeframe": alpaca_tf,
            "start": self._lookback_start(timeframe, out_bars, base_cushion).isoformat(),
            "adjustment": "raw",
            "sort": "desc",
            "limit": min(out_bars, _MAX_PAGE_LIMIT),
        }

        candles: List[BaseCandle] = []

        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            ) as client:
                page = 0
                while len(candles) < out_bars:
                    page += 1
                    logger.debug(
                        f"[Alpaca] Requesting {alpaca_tf} bars for {symbol_upper} "
                        f"(page {page}, total fetched: {len(candles)})"
                    )

                    resp = await client.get(url, headers=headers, params=params)
                    if resp.status_code != 200:
                        logger.error(
                            f"Alpaca bars request failed: status={resp.status_code} "
                            f"body={resp.text[:500]}"
                        )
                        raise ProviderError(
                            f"Alpaca bars request failed: {resp.status_code} {resp.text[:200]}"
                        )

                    data = resp.json()
                    for bar in data.get("bars") or []:
                        try:
                            candles.append(parse_alpaca_bar(bar))
                        except (KeyError, TypeError, ValueError) as exc:
                            logger.warning(f"Skipping malformed Alpaca bar: {bar} (error={exc})")

                    next_page_token = data.get("next_page_token")
                    if not next_page_token:
                        break
                    params["page_token"] = next_page_token
        except httpx.HTTPError as e:
            raise ProviderError(f"Alpaca request for {symbol_upper} {timeframe} failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Alpaca returned an unreadable payload: {e}") from e

        # Newest-first from the API; keep the most recent out_bars, oldest first
        candles = candles[:out_bars]
        candles.reverse()

        logger.info(f"[Alpaca] Fetched {len(candles)} {timeframe} bars for {symbol_upper}")
        return candles
