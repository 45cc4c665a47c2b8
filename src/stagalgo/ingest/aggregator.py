"""Roll cleaned quotes into OHLCV candles on every store timeframe."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from stagalgo.core.types import Candle, Timeframe


def floor_time(ts: datetime, delta: timedelta) -> datetime:
    """Floor a datetime to the nearest lower multiple of ``delta`` since epoch (UTC)."""
    seconds = ts.timestamp()
    step = delta.total_seconds()
    return datetime.fromtimestamp(seconds - (seconds % step), tz=UTC)


@dataclass
class _WorkingCandle:
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_candle(self, symbol: str, timeframe: Timeframe) -> Candle:
        return Candle(
            symbol=symbol,
            timeframe=timeframe,
            ts=self.open_time,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )


class CandleAggregator:
    """Aggregate quotes into candles on multiple timeframes.

    ``update`` returns the in-progress candle of every timeframe after applying
    the quote. Candles are keyed by bucket open time, so publishing each
    snapshot lets the store's upsert keep exactly one row per bucket. A quote
    older than the working bucket is ignored for that timeframe.
    """

    def __init__(self, timeframes: Iterable[Timeframe] | None = None) -> None:
        self._timeframes: list[Timeframe] = list(timeframes) if timeframes else list(Timeframe)
        self._working: dict[tuple[str, Timeframe], _WorkingCandle] = {}

    def update(self, symbol: str, price: float, volume: float, ts: datetime) -> list[Candle]:
        candles: list[Candle] = []
        for tf in self._timeframes:
            bucket_start = floor_time(ts, tf.duration)
            key = (symbol, tf)
            working = self._working.get(key)

            if working is None or bucket_start > working.open_time:
                working = _WorkingCandle(
                    open_time=bucket_start,
                    open=price,
                    high=price,
                    low=price,
                    close=price,
                    volume=volume,
                )
                self._working[key] = working
            elif bucket_start == working.open_time:
                working.high = max(working.high, price)
                working.low = min(working.low, price)
                working.close = price
                working.volume += volume
            else:
                continue

            candles.append(working.to_candle(symbol, tf))
        return candles

    def reset(self) -> None:
        self._working.clear()
