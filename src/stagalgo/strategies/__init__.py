"""Candle-window trading strategies."""

from stagalgo.strategies.base import BaseStrategy, StrategyConfig, StrategyDecision, StrategyRisk
from stagalgo.strategies.breakout import BreakoutScout
from stagalgo.strategies.mean_reversion import MeanReverter
from stagalgo.strategies.trend_follow import TrendRider

STRATEGY_REGISTRY: dict[str, type[BaseStrategy]] = {
    BreakoutScout.kind: BreakoutScout,
    MeanReverter.kind: MeanReverter,
    TrendRider.kind: TrendRider,
}


def get_strategy(kind: str) -> BaseStrategy:
    try:
        return STRATEGY_REGISTRY[kind]()
    except KeyError:
        raise ValueError(f"Unknown strategy kind: {kind}") from None


__all__ = [
    "BaseStrategy",
    "BreakoutScout",
    "MeanReverter",
    "STRATEGY_REGISTRY",
    "StrategyConfig",
    "StrategyDecision",
    "StrategyRisk",
    "TrendRider",
    "get_strategy",
]
