"""
Unit tests for AlpacaCandleProvider using httpx.MockTransport.
"""

import httpx
import pytest

from candle_pipeline.config import AlpacaConfig
from candle_pipeline.core.exceptions import ProviderError
from candle_pipeline.integrations.alpaca_data import AlpacaCandleProvider, parse_alpaca_bar


CONFIG = AlpacaConfig(api_key_id="key", api_secret_key="secret", data_base_url="https://data.test")


def _bar(hour: int, close: float) -> dict:
    return {"t": f"2024-01-02T{hour:02d}:00:00Z", "o": close, "h": close + 1, "l": close - 1, "c": close, "v": 10}


class TestParseAlpacaBar:

    def test_epoch_ms(self):
        candle = parse_alpaca_bar(_bar(15, 100.0))
        assert candle.time == 1704207600000
        assert candle.close == 100.0
        assert candle.volume == 10.0


class TestFetchCandles:

    @pytest.mark.asyncio
    async def test_pages_until_out_bars_and_returns_ascending(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "page_token" not in request.url.params:
                return httpx.Response(200, json={
                    "bars": [_bar(15, 103.0), _bar(14, 102.0)],
                    "next_page_token": "p2",
                })
            return httpx.Response(200, json={"bars": [_bar(13, 101.0)], "next_page_token": None})

        provider = AlpacaCandleProvider(CONFIG, transport=httpx.MockTransport(handler))

        candles = await provider.fetch_candles("aapl", "1h", out_bars=3)

        assert [c.close for c in candles] == [101.0, 102.0, 103.0]
        assert len(requests) == 2
        first = requests[0]
        assert first.url.path == "/v2/stocks/AAPL/bars"
        assert first.url.params["timeframe"] == "1Hour"
        assert first.url.params["sort"] == "desc"
        assert first.url.params["limit"] == "3"
        assert first.headers["APCA-API-KEY-ID"] == "key"
        assert requests[1].url.params["page_token"] == "p2"

    @pytest.mark.asyncio
    async def test_keeps_most_recent_out_bars(self):
        def handler(request):
            return httpx.Response(200, json={"bars": [_bar(h, float(h)) for h in (15, 14, 13, 12)]})

        provider = AlpacaCandleProvider(CONFIG, transport=httpx.MockTransport(handler))

        candles = await provider.fetch_candles("AAPL", "1h", out_bars=2)

        assert [c.close for c in candles] == [14.0, 15.0]

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        provider = AlpacaCandleProvider(
            CONFIG, transport=httpx.MockTransport(lambda request: httpx.Response(403, text="forbidden"))
        )

        with pytest.raises(ProviderError, match="403"):
            await provider.fetch_candles("AAPL", "1h", out_bars=5)

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = AlpacaCandleProvider(CONFIG, transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError):
            await provider.fetch_candles("AAPL", "1h", out_bars=5)

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        provider = AlpacaCandleProvider(AlpacaConfig(api_key_id="", api_secret_key=""))

        with pytest.raises(ProviderError, match="credentials"):
            await provider.fetch_candles("AAPL", "1h", out_bars=5)

    @pytest.mark.asyncio
    async def test_unsupported_timeframe(self):
        provider = AlpacaCandleProvider(CONFIG)

        with pytest.raises(ProviderError, match="not supported"):
            await provider.fetch_candles("AAPL", "7m", out_bars=5)
