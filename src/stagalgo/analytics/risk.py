"""Portfolio and position risk metrics."""

import math
from collections.abc import Callable, Sequence
from datetime import datetime

import numpy as np

from stagalgo.core.types import Position, PositionRisk

# Parametric VaR inputs: assumed annual volatility and the one-sided 95% z-score.
ASSUMED_ANNUAL_VOLATILITY = 0.15
TRADING_DAYS = 252
Z_95 = 1.645
ES_MULTIPLIER = 1.2

STOP_FRACTION = 0.95
TAKE_PROFIT_FRACTION = 1.10


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def concentration_top(positions: Sequence[Position], equity: float) -> float:
    """Largest position's market value as percent of equity."""
    if not positions or equity <= 0:
        return 0.0
    return max(abs(p.market_value) for p in positions) / equity * 100


def portfolio_beta(
    positions: Sequence[Position], equity: float, beta_of: Callable[[str], float]
) -> float:
    """Equity-weighted sum of symbol betas."""
    if equity <= 0:
        return 0.0
    return sum(p.market_value / equity * beta_of(p.symbol) for p in positions)


def max_drawdown_pct(cumulative_returns: Sequence[float]) -> float:
    """Largest peak-to-trough fall of the equity curve ``1 + ret_cum``, in percent."""
    if not cumulative_returns:
        return 0.0
    curve = 1.0 + np.asarray(cumulative_returns, dtype=float)
    peaks = np.maximum.accumulate(curve)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks > 0, (peaks - curve) / peaks, 0.0)
    return float(drawdowns.max() * 100)


def value_at_risk_95(total_market_value: float) -> float:
    return abs(total_market_value) * (ASSUMED_ANNUAL_VOLATILITY / math.sqrt(TRADING_DAYS)) * Z_95


def expected_shortfall_95(var95: float) -> float:
    return var95 * ES_MULTIPLIER


def liquidity_score(positions: Sequence[Position], adv_of: Callable[[str], float]) -> float:
    """Mean of ``1 - min(mv / ADV, 1)``; 1.0 means every position is small versus volume."""
    if not positions:
        return 1.0
    scores = []
    for p in positions:
        adv = adv_of(p.symbol)
        ratio = abs(p.market_value) / adv if adv > 0 else 1.0
        scores.append(1 - min(ratio, 1.0))
    return sum(scores) / len(scores)


def risk_state_score(drawdown: float, concentration: float, beta: float) -> float:
    """Composite 0-100 risk score (drawdown 50%, concentration 30%, beta deviation 20%)."""
    dd_component = _clamp(drawdown / 20)
    conc_component = _clamp(concentration / 50)
    beta_component = _clamp(abs(beta - 1))
    score = (dd_component * 0.5 + conc_component * 0.3 + beta_component * 0.2) * 100
    return _clamp(score, 0.0, 100.0)


def position_risk(
    position: Position,
    ts: datetime,
    beta: float,
    adv: float,
    spread: float,
) -> PositionRisk:
    return PositionRisk(
        symbol=position.symbol,
        ts=ts,
        beta=beta,
        adv_pct=abs(position.market_value) / adv * 100 if adv > 0 else 0.0,
        spread_est=spread,
        stop_suggest=position.avg_cost * STOP_FRACTION,
        tp_suggest=position.avg_cost * TAKE_PROFIT_FRACTION,
    )
