"""Breakout Scout: range breakout with volume confirmation."""

from collections.abc import Sequence
from typing import Any

from stagalgo.core.types import Candle
from stagalgo.strategies.base import BaseStrategy, StrategyConfig, StrategyDecision, StrategyRisk


class BreakoutScout(BaseStrategy):
    kind = "breakout"

    def describe(self) -> StrategyConfig:
        return StrategyConfig(
            name="Breakout Scout",
            kind=self.kind,
            params={"lookback": 20, "vol_mult": 1.3},
            risk=StrategyRisk(stop_loss_pct=0.025, take_profit_pct=0.05),
        )

    def compute_indicators(self, candles: Sequence[Candle]) -> dict[str, Any]:
        lookback = int(self.describe().params["lookback"])
        # range excludes the bar under test
        window = list(candles[-lookback - 1 : -1])
        if not window:
            return {}
        return {
            "range_high": max(c.high for c in window),
            "range_low": min(c.low for c in window),
            "avg_volume": sum(c.volume for c in window) / len(window),
        }

    def decide(
        self,
        candles: Sequence[Candle],
        indicators: dict[str, Any],
        config: StrategyConfig | None = None,
    ) -> StrategyDecision:
        if not indicators or not candles:
            return StrategyDecision.none("indicators not computed")

        current = candles[-1]
        range_high = indicators["range_high"]
        range_low = indicators["range_low"]
        avg_volume = indicators["avg_volume"]
        vol_mult = self._param(config, "vol_mult")
        volume_confirmed = avg_volume > 0 and current.volume > avg_volume * vol_mult
        vol_ratio = current.volume / avg_volume if avg_volume > 0 else 0.0

        if current.close > range_high and volume_confirmed:
            return StrategyDecision(
                action="enter",
                side="buy",
                qty=1,
                reason=f"Upside breakout: {current.close:.2f} > {range_high:.2f}, vol {vol_ratio:.2f}x",
            )
        if current.close < range_low and volume_confirmed:
            return StrategyDecision(
                action="enter",
                side="sell",
                qty=1,
                reason=f"Downside breakout: {current.close:.2f} < {range_low:.2f}, vol {vol_ratio:.2f}x",
            )
        if range_low < current.close < range_high:
            return StrategyDecision(
                action="exit",
                side="sell",
                qty=1,
                reason=f"Back inside range: {range_low:.2f} - {range_high:.2f}",
            )
        return StrategyDecision.none("no breakout")
