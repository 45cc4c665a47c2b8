"""Technical indicators over candle series.

Series functions (``calculate_*``) return a list aligned with the input, padded
with ``None`` where the window is not yet full. Scalar helpers return the
latest value or ``None`` when there is not enough data.
"""

from collections.abc import Sequence

import numpy as np

from stagalgo.core.types import Candle, IndicatorSnapshot


def calculate_sma(data: Sequence[float], period: int) -> list[float | None]:
    """Simple moving average series."""
    if not data or period <= 0 or len(data) < period:
        return [None] * len(data)

    sma_values: list[float | None] = [None] * (period - 1)
    current_sum = sum(data[:period])
    sma_values.append(current_sum / period)
    for i in range(period, len(data)):
        current_sum += data[i] - data[i - period]
        sma_values.append(current_sum / period)
    return sma_values


def calculate_ema(data: Sequence[float], period: int) -> list[float]:
    """Exponential moving average seeded with the first value.

    Every position has a value, so crossovers can be evaluated from the
    second bar on.
    """
    if not data or period <= 0:
        return []
    multiplier = 2 / (period + 1)
    ema_values = [float(data[0])]
    for value in data[1:]:
        ema_values.append((value - ema_values[-1]) * multiplier + ema_values[-1])
    return ema_values


def calculate_rsi(data: Sequence[float], period: int = 14) -> list[float | None]:
    """Relative Strength Index with Wilder smoothing.

    The first value appears at index ``period``. A window with no losses reads
    100, a completely flat window reads 50.
    """
    if not data or period <= 0 or len(data) <= period:
        return [None] * len(data)

    rsi_values: list[float | None] = [None] * period
    changes = np.diff(np.asarray(data, dtype=float))
    gains = np.clip(changes, 0, None)
    losses = np.clip(-changes, 0, None)

    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    rsi_values.append(_rsi_from_averages(avg_gain, avg_loss))

    for i in range(period, len(changes)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        rsi_values.append(_rsi_from_averages(avg_gain, avg_loss))

    return rsi_values


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def sma(data: Sequence[float], period: int) -> float | None:
    if period <= 0 or len(data) < period:
        return None
    return float(np.mean(np.asarray(data[-period:], dtype=float)))


def ema(data: Sequence[float], period: int) -> float | None:
    if period <= 0 or len(data) < period:
        return None
    return calculate_ema(data, period)[-1]


def rsi(data: Sequence[float], period: int = 14) -> float:
    """Latest RSI; neutral 50 when there are not enough closes."""
    values = calculate_rsi(data, period)
    if not values or values[-1] is None:
        return 50.0
    return values[-1]


def macd(data: Sequence[float], fast: int = 12, slow: int = 26) -> float | None:
    """MACD line (fast EMA minus slow EMA); ``None`` below ``slow`` closes."""
    if len(data) < slow:
        return None
    return calculate_ema(data, fast)[-1] - calculate_ema(data, slow)[-1]


def true_ranges(candles: Sequence[Candle]) -> list[float]:
    ranges = []
    for prev, cur in zip(candles, candles[1:]):
        ranges.append(
            max(
                cur.high - cur.low,
                abs(cur.high - prev.close),
                abs(cur.low - prev.close),
            )
        )
    return ranges


def atr(candles: Sequence[Candle], period: int = 14) -> float | None:
    """Average true range: mean of the trailing ``period`` true ranges."""
    if period <= 0 or len(candles) < period + 1:
        return None
    return float(np.mean(true_ranges(candles)[-period:]))


def bollinger(
    data: Sequence[float], period: int = 20, num_std: float = 2.0
) -> tuple[float | None, float | None]:
    """Upper and lower Bollinger bands around the SMA (population sigma)."""
    if period <= 0 or len(data) < period:
        return None, None
    window = np.asarray(data[-period:], dtype=float)
    mid = float(window.mean())
    sigma = float(window.std())
    return mid + num_std * sigma, mid - num_std * sigma


def session_vwap(candles: Sequence[Candle]) -> float | None:
    """VWAP over the candles that share the latest candle's UTC calendar day.

    Falls back to the latest close when that session has no volume.
    """
    if not candles:
        return None
    session_day = candles[-1].ts.date()
    session = [c for c in candles if c.ts.date() == session_day]
    total_volume = sum(c.volume for c in session)
    if total_volume <= 0:
        return candles[-1].close
    weighted = sum((c.high + c.low + c.close) / 3 * c.volume for c in session)
    return weighted / total_volume


def annualized_volatility(closes: Sequence[float], periods_per_year: int = 252) -> float | None:
    """Sample standard deviation of log returns scaled to a year."""
    if len(closes) < 3:
        return None
    prices = np.asarray(closes, dtype=float)
    if np.any(prices <= 0):
        return None
    returns = np.diff(np.log(prices))
    return float(returns.std(ddof=1) * np.sqrt(periods_per_year))


def compute_indicator_snapshot(candles: Sequence[Candle]) -> IndicatorSnapshot:
    """Indicator set at the last candle of a non-empty, ascending series."""
    last = candles[-1]
    closes = [c.close for c in candles]
    bb_up, bb_dn = bollinger(closes, 20, 2.0)
    return IndicatorSnapshot(
        symbol=last.symbol,
        timeframe=last.timeframe,
        ts=last.ts,
        ma20=sma(closes, 20),
        ma50=sma(closes, 50),
        ma200=sma(closes, 200),
        rsi14=rsi(closes, 14),
        macd=macd(closes),
        atr14=atr(candles, 14),
        bb_up=bb_up,
        bb_dn=bb_dn,
        vwap_sess=session_vwap(candles),
    )
