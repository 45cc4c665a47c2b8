"""Governance DTOs: trade intents, decisions, alerts and collapse signals."""

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from stagalgo.core.types import OracleSignal, Position, Severity

DecisionAction = Literal["approve", "soft_pull", "hard_pull"]
CollapseRecommendation = Literal[
    "no_action", "monitor_closely", "reduce_exposure", "exit_immediately"
]


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TradeIntent(BaseModel):
    """A trade that passed upstream validation and awaits position-level review."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("trade"))
    user_id: str = "default"
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float = Field(gt=0)
    price: float = Field(gt=0)
    order_type: Literal["market", "limit", "stop", "stop_limit"] = "market"
    stop_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    strategy: str | None = None


class TradeModification(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: Literal["quantity", "stop_loss"]
    original_value: float | None
    new_value: float
    reason: str


class GovernanceDecision(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("overseer"))
    trade_id: str
    governor: str = "overseer"
    action: DecisionAction
    reasoning: str
    reasons: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    modifications: list[TradeModification] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)
    processing_ms: float = 0.0
    created_at: datetime = Field(default_factory=_utcnow)

    def apply(self, trade: TradeIntent) -> TradeIntent:
        """Return ``trade`` with every modification applied in order."""
        if not self.modifications:
            return trade
        updates: dict[str, Any] = {}
        for modification in self.modifications:
            updates[modification.field] = modification.new_value
        return trade.model_copy(update=updates)


class RiskAlert(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("alert"))
    alert_type: Literal["hard_pull", "soft_pull", "threshold_breach"]
    severity: Severity
    title: str
    message: str
    symbol: str
    current_value: float = 0.0
    threshold_value: float = 0.0
    recommended_action: str
    governor: str = "overseer"
    acknowledged: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class CollapseFactors(BaseModel):
    model_config = ConfigDict(frozen=True)

    fundamental_decline: float = Field(ge=0, le=1)
    unusual_volume: float = Field(ge=0, le=1)
    abnormal_spreads: float = Field(ge=0, le=1)
    oracle_red_flags: float = Field(ge=0, le=1)
    negative_sentiment: float = Field(ge=0, le=1)
    technical_breakdown: float = Field(ge=0, le=1)


class CollapseSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    score: float
    factors: CollapseFactors
    recommendation: CollapseRecommendation
    confidence: float
    time_horizon: str = "1d"
    generated_at: datetime


class OverseerContext(BaseModel):
    """Per-symbol inputs to a position-level decision.

    ``None`` means the input is unknown and the matching check is skipped.
    """

    symbol: str
    spread_pct: float | None = None
    current_volume: float | None = None
    average_daily_volume: float | None = None
    volatility: float | None = None
    recent_trades: list[datetime] = Field(default_factory=list)
    oracle_signals: list[OracleSignal] = Field(default_factory=list)
    position: Position | None = None
    updated_at: datetime

    @property
    def volume_ratio(self) -> float | None:
        if self.current_volume is None or not self.average_daily_volume:
            return None
        return self.current_volume / self.average_daily_volume
