"""Mean Reverter: RSI band entries with a neutral-line exit."""

from collections.abc import Sequence
from typing import Any

from stagalgo.analytics.indicators import calculate_rsi
from stagalgo.core.types import Candle
from stagalgo.strategies.base import BaseStrategy, StrategyConfig, StrategyDecision, StrategyRisk


class MeanReverter(BaseStrategy):
    kind = "mean_reversion"

    def describe(self) -> StrategyConfig:
        return StrategyConfig(
            name="Mean Reverter",
            kind=self.kind,
            params={"rsi_period": 14, "oversold": 30, "overbought": 70, "exit_neutral": 50},
            risk=StrategyRisk(stop_loss_pct=0.02, take_profit_pct=0.03),
        )

    def compute_indicators(self, candles: Sequence[Candle]) -> dict[str, Any]:
        period = int(self.describe().params["rsi_period"])
        series = calculate_rsi([c.close for c in candles], period)
        current = series[-1] if series else None
        return {"rsi": series, "current_rsi": current if current is not None else 50.0}

    def decide(
        self,
        candles: Sequence[Candle],
        indicators: dict[str, Any],
        config: StrategyConfig | None = None,
    ) -> StrategyDecision:
        if not indicators:
            return StrategyDecision.none("indicators not computed")

        value = indicators["current_rsi"]
        oversold = self._param(config, "oversold")
        overbought = self._param(config, "overbought")
        neutral = self._param(config, "exit_neutral")

        if value < oversold:
            return StrategyDecision(
                action="enter", side="buy", qty=1, reason=f"RSI oversold: {value:.2f} < {oversold:g}"
            )
        if value > overbought:
            return StrategyDecision(
                action="enter", side="sell", qty=1, reason=f"RSI overbought: {value:.2f} > {overbought:g}"
            )
        if neutral < value < overbought:
            return StrategyDecision(
                action="exit", side="sell", qty=1, reason=f"RSI back to neutral: {value:.2f}"
            )
        if oversold < value < neutral:
            return StrategyDecision(
                action="exit", side="buy", qty=1, reason=f"RSI back to neutral: {value:.2f}"
            )
        return StrategyDecision.none(f"RSI neutral: {value:.2f}")
