"""Base strategy class.

Strategies are stateless: a candle window goes in, indicators are computed
from it, and ``decide`` maps window plus indicators to a single decision.
Sizing is left to the caller, so every decision carries ``qty=1``.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel, Field

from stagalgo.core.types import Candle

StrategyAction = Literal["enter", "exit", "none"]


class StrategyRisk(BaseModel):
    stop_loss_pct: float
    take_profit_pct: float
    max_notional: float = 1000.0


class StrategyConfig(BaseModel):
    name: str
    kind: str
    params: dict[str, float] = Field(default_factory=dict)
    risk: StrategyRisk


class StrategyDecision(BaseModel):
    action: StrategyAction
    side: Literal["buy", "sell"] | None = None
    qty: float = 0
    reason: str

    @classmethod
    def none(cls, reason: str) -> "StrategyDecision":
        return cls(action="none", reason=reason)


class BaseStrategy(ABC):
    """Base class for all candle-window strategies."""

    kind: str = ""

    @abstractmethod
    def describe(self) -> StrategyConfig:
        """Default configuration for this strategy."""

    @abstractmethod
    def compute_indicators(self, candles: Sequence[Candle]) -> dict[str, Any]:
        """Indicator values derived from ``candles``; empty if the window is too short."""

    @abstractmethod
    def decide(
        self,
        candles: Sequence[Candle],
        indicators: dict[str, Any],
        config: StrategyConfig | None = None,
    ) -> StrategyDecision:
        """Map the window and its indicators to an enter/exit/none decision."""

    def evaluate(
        self, candles: Sequence[Candle], config: StrategyConfig | None = None
    ) -> StrategyDecision:
        """Compute indicators and decide in one step."""
        return self.decide(candles, self.compute_indicators(candles), config)

    def _param(self, config: StrategyConfig | None, key: str) -> float:
        defaults = self.describe().params
        if config is not None and config.params.get(key):
            return config.params[key]
        return defaults[key]
