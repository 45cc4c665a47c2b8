"""Candle history fetch with a hard timeout and last-good cache fallback."""

import asyncio
from typing import Any

import httpx
from pydantic import ValidationError

from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.types import Candle, Timeframe
from stagalgo.logging import get_logger
from stagalgo.store.market_store import MarketStore

logger = get_logger(__name__)

CANDLES_PATH = "/rest/v1/rpc/fetch_candles"


class CandleFetcher:
    """Fetches candles from the backend RPC.

    A failed or timed-out fetch returns the last non-empty result for the same
    ``(symbol, timeframe)``, or an empty list. Successful fetches are ingested
    into ``store`` when one is given.
    """

    def __init__(
        self,
        store: MarketStore | None = None,
        config: StagAlgoSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._settings = config or settings
        self._client = client
        self._owns_client = client is None
        self._cache: dict[tuple[str, Timeframe], list[Candle]] = {}
        self.failures = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.backend_url,
                timeout=self._settings.candle_fetch_timeout_seconds,
            )
        return self._client

    async def fetch(self, symbol: str, timeframe: Timeframe | str, limit: int = 100) -> list[Candle]:
        symbol = symbol.strip().upper()
        tf = Timeframe(timeframe)
        timeout = self._settings.candle_fetch_timeout_seconds
        try:
            rows = await asyncio.wait_for(self._request(symbol, tf, limit), timeout=timeout)
            candles = self._parse(symbol, tf, rows)
        except (httpx.HTTPError, ValueError, TimeoutError) as e:
            self.failures += 1
            cached = self.get_cached(symbol, tf)
            logger.warning(
                f"Candle fetch failed for {symbol} {tf.value}, using {len(cached)} cached: "
                f"{e or type(e).__name__}"
            )
            return cached

        if candles:
            self._cache[(symbol, tf)] = candles
            if self._store is not None:
                for candle in candles:
                    self._store.ingest_candle(candle)
        logger.debug(f"Fetched {len(candles)} {tf.value} candles for {symbol}")
        return candles

    async def _request(self, symbol: str, tf: Timeframe, limit: int) -> Any:
        headers = {}
        if self._settings.backend_api_key:
            headers["apikey"] = self._settings.backend_api_key
            headers["Authorization"] = f"Bearer {self._settings.backend_api_key}"
        response = await self._get_client().post(
            CANDLES_PATH,
            json={"_symbol": symbol, "_tf": tf.value, "_limit": limit},
            headers=headers,
        )
        response.raise_for_status()
        return response.json()

    def _parse(self, symbol: str, tf: Timeframe, rows: Any) -> list[Candle]:
        if not isinstance(rows, list):
            raise ValueError("candle response is not a list")
        candles = []
        for row in rows:
            try:
                candles.append(Candle.model_validate({"symbol": symbol, "timeframe": tf, **row}))
            except (ValidationError, TypeError) as e:
                logger.warning(f"Skipping malformed candle for {symbol}: {e}")
        return sorted(candles, key=lambda c: c.ts)

    def get_cached(self, symbol: str, timeframe: Timeframe | str) -> list[Candle]:
        return list(self._cache.get((symbol.strip().upper(), Timeframe(timeframe)), []))

    def clear_cache(self, symbol: str | None = None) -> None:
        if symbol is None:
            self._cache.clear()
            return
        symbol = symbol.strip().upper()
        for key in [k for k in self._cache if k[0] == symbol]:
            del self._cache[key]

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
