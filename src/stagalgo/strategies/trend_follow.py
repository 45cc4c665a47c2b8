"""Trend Rider: EMA fast/slow crossover confirmed by price."""

from collections.abc import Sequence
from typing import Any

from stagalgo.analytics.indicators import calculate_ema
from stagalgo.core.types import Candle
from stagalgo.strategies.base import BaseStrategy, StrategyConfig, StrategyDecision, StrategyRisk


class TrendRider(BaseStrategy):
    kind = "momentum"

    def describe(self) -> StrategyConfig:
        return StrategyConfig(
            name="Trend Rider",
            kind=self.kind,
            params={"ema_fast": 9, "ema_slow": 21, "trailing_stop_pct": 0.03, "tp_pct": 0.06},
            risk=StrategyRisk(stop_loss_pct=0.03, take_profit_pct=0.06),
        )

    def compute_indicators(self, candles: Sequence[Candle]) -> dict[str, Any]:
        if len(candles) < 2:
            return {}
        params = self.describe().params
        closes = [c.close for c in candles]
        fast = calculate_ema(closes, int(params["ema_fast"]))
        slow = calculate_ema(closes, int(params["ema_slow"]))
        return {
            "ema_fast": fast,
            "ema_slow": slow,
            "current_ema_fast": fast[-1],
            "current_ema_slow": slow[-1],
        }

    def decide(
        self,
        candles: Sequence[Candle],
        indicators: dict[str, Any],
        config: StrategyConfig | None = None,
    ) -> StrategyDecision:
        if not indicators or len(candles) < 2:
            return StrategyDecision.none("indicators not computed")

        close = candles[-1].close
        fast = indicators["current_ema_fast"]
        slow = indicators["current_ema_slow"]
        prev_fast = indicators["ema_fast"][-2]
        prev_slow = indicators["ema_slow"][-2]

        if fast > slow and prev_fast <= prev_slow and close > fast:
            return StrategyDecision(
                action="enter",
                side="buy",
                qty=1,
                reason=f"EMA crossover: fast={fast:.2f} > slow={slow:.2f}",
            )
        if fast < slow and prev_fast >= prev_slow:
            return StrategyDecision(
                action="exit",
                side="sell",
                qty=1,
                reason=f"EMA bearish cross: fast={fast:.2f} < slow={slow:.2f}",
            )
        return StrategyDecision.none("no signal")
