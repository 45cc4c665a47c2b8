"""Tests for the candle fetcher's timeout and cache fallback."""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from stagalgo.config import StagAlgoSettings
from stagalgo.core.types import Timeframe
from stagalgo.market_data import CandleFetcher
from stagalgo.market_data.candle_fetcher import CANDLES_PATH


def _rows(clock, closes):
    start = clock.now() - timedelta(days=len(closes) - 1)
    return [
        {"ts": (start + timedelta(days=i)).isoformat(), "o": c, "h": c + 1, "l": c - 1, "c": c, "v": 1000}
        for i, c in enumerate(closes)
    ]


class Backend:
    def __init__(self, responses):
        self.responses = list(responses)
        self.bodies: list[dict] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        assert request.url.path == CANDLES_PATH
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, float):
            await asyncio.sleep(response)
            return httpx.Response(200, json=[])
        return response


def _fetcher(backend, store=None, **settings) -> CandleFetcher:
    config = StagAlgoSettings(_env_file=None, **settings)
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend), base_url="http://backend.test")
    return CandleFetcher(store=store, config=config, client=client)


async def test_fetch_parses_sorts_and_ingests(clock, store) -> None:
    rows = _rows(clock, [100.0, 101.0, 102.0])
    backend = Backend([httpx.Response(200, json=list(reversed(rows)) + [{"ts": "junk"}, "junk"])])
    fetcher = _fetcher(backend, store)

    candles = await fetcher.fetch(" aapl ", "D1", limit=3)

    assert [c.close for c in candles] == [100.0, 101.0, 102.0]
    assert all(c.symbol == "AAPL" and c.timeframe == Timeframe.D1 for c in candles)
    assert backend.bodies == [{"_symbol": "AAPL", "_tf": "D1", "_limit": 3}]
    assert [c.close for c in store.get_candles("AAPL", Timeframe.D1)] == [100.0, 101.0, 102.0]
    assert fetcher.get_cached("AAPL", Timeframe.D1) == candles


async def test_failed_fetch_falls_back_to_last_good_result(clock) -> None:
    backend = Backend([
        httpx.Response(200, json=_rows(clock, [100.0, 101.0])),
        httpx.Response(500, json={"message": "boom"}),
        httpx.ConnectError("refused"),
        httpx.Response(200, json={"not": "a list"}),
    ])
    fetcher = _fetcher(backend)

    good = await fetcher.fetch("AAPL", Timeframe.D1)
    for _ in range(3):
        assert await fetcher.fetch("AAPL", Timeframe.D1) == good
    assert fetcher.failures == 3


async def test_empty_result_does_not_replace_cache(clock) -> None:
    backend = Backend([httpx.Response(200, json=_rows(clock, [100.0])), httpx.Response(200, json=[])])
    fetcher = _fetcher(backend)

    await fetcher.fetch("AAPL", "1h")
    assert await fetcher.fetch("AAPL", "1h") == []
    assert len(fetcher.get_cached("AAPL", "1h")) == 1


async def test_timeout_returns_cache_or_empty() -> None:
    fetcher = _fetcher(Backend([1.0]), candle_fetch_timeout_seconds=0.05)
    assert await fetcher.fetch("MSFT", Timeframe.M5) == []
    assert fetcher.failures == 1


async def test_unknown_timeframe_is_rejected() -> None:
    fetcher = _fetcher(Backend([]))
    with pytest.raises(ValueError):
        await fetcher.fetch("AAPL", "2w")


async def test_clear_cache(clock) -> None:
    rows = _rows(clock, [100.0])
    backend = Backend([httpx.Response(200, json=rows), httpx.Response(200, json=rows)])
    fetcher = _fetcher(backend)
    await fetcher.fetch("AAPL", Timeframe.D1)
    await fetcher.fetch("MSFT", Timeframe.D1)

    fetcher.clear_cache("aapl")
    assert fetcher.get_cached("AAPL", Timeframe.D1) == []
    assert len(fetcher.get_cached("MSFT", Timeframe.D1)) == 1
    fetcher.clear_cache()
    assert fetcher.get_cached("MSFT", Timeframe.D1) == []
