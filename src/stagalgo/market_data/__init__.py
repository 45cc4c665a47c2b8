"""Market data adapters."""

from stagalgo.market_data.candle_fetcher import CandleFetcher

__all__ = ["CandleFetcher"]
