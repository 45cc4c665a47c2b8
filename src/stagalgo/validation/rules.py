"""Validation rule definitions and the default rule catalogue.

A rule is static configuration (id, severity, base parameters) plus a few
counters the validator maintains. The predicate for each rule is a plain
function ``check(rule, params, context, snapshot) -> Violation | None`` looked
up in ``DEFAULT_CHECKS`` by rule id. ``params`` is the rule's base parameter
bag already overlaid with the user's adaptation; checks never read
``rule.parameters`` directly.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

RuleSeverity = Literal["warning", "error", "critical"]
RuleCategory = Literal["risk", "compliance", "behavioral", "market"]
UserLevel = Literal["beginner", "intermediate", "advanced", "expert"]

BLOCKING_SEVERITIES: frozenset[str] = frozenset({"error", "critical"})


class ValidationRule(BaseModel):
    id: str
    name: str
    category: RuleCategory
    severity: RuleSeverity
    enabled: bool = True
    parameters: dict[str, float] = Field(default_factory=dict)
    violation_count: int = 0
    effectiveness: float = Field(default=0.5, ge=0, le=1)
    last_violation: datetime | None = None
    adaptive_threshold: float | None = None


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    severity: RuleSeverity
    message: str
    suggested_action: str
    block_trade: bool


class ValidationContext(BaseModel):
    """A proposed trade as submitted for validation."""

    user_id: str
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float = Field(gt=0)
    price: float = Field(gt=0)
    order_type: Literal["market", "limit", "stop", "stop_limit"] = "market"
    user_level: UserLevel | None = None
    workspace_id: str | None = None
    trade_id: str | None = None

    @property
    def notional(self) -> float:
        return self.quantity * self.price


@dataclass(frozen=True)
class ValidationSnapshot:
    """Everything the checks read, captured once per ``validate_trade`` call."""

    now: datetime
    equity: float
    symbol_sector: str
    symbol_beta: float
    historical_volatility: float | None
    sector_exposure: Mapping[str, float] = field(default_factory=dict)
    trades_today: int = 0
    trades_last_hour: int = 0
    realized_pnl_today: float = 0.0
    last_loss_at: datetime | None = None
    consecutive_trades: int = 0


RuleCheck = Callable[
    [ValidationRule, Mapping[str, float], ValidationContext, ValidationSnapshot], Violation | None
]


def _violation(rule: ValidationRule, message: str, suggested_action: str) -> Violation:
    return Violation(
        rule_id=rule.id,
        severity=rule.severity,
        message=message,
        suggested_action=suggested_action,
        block_trade=rule.severity in BLOCKING_SEVERITIES,
    )


def check_position_size(rule, params, context, snapshot):
    position_value = context.notional
    position_pct = position_value / snapshot.equity
    max_pct = params["max_position_percent"]
    max_dollars = params["absolute_max_dollars"]
    if position_pct > max_pct or position_value > max_dollars:
        allowed_value = min(snapshot.equity * max_pct, max_dollars)
        return _violation(
            rule,
            f"Position size ${position_value:,.2f} ({position_pct:.1%} of portfolio) exceeds "
            f"limit ({max_pct:.1%} / ${max_dollars:,.0f})",
            f"Reduce position size to {int(allowed_value // context.price)} shares",
        )
    return None


def check_daily_loss(rule, params, context, snapshot):
    loss = -min(snapshot.realized_pnl_today, 0.0)
    if loss <= 0:
        return None
    loss_pct = loss / snapshot.equity
    if loss_pct >= params["max_daily_loss_percent"] or loss >= params["absolute_max_dollars"]:
        return _violation(
            rule,
            f"Daily loss limit reached: {loss_pct:.1%} (-${loss:,.2f})",
            "Stop trading for today and review strategy",
        )
    return None


def check_penny_stock(rule, params, context, snapshot):
    if context.price < params["min_price"]:
        return _violation(
            rule,
            f"Stock price ${context.price:.2f} is below minimum ${params['min_price']:.2f}",
            "Consider higher-priced, more liquid stocks",
        )
    return None


def check_sector_concentration(rule, params, context, snapshot):
    sector = snapshot.symbol_sector
    if context.side != "buy" or sector == "Unknown":
        return None
    exposure = snapshot.sector_exposure.get(sector, 0.0) + context.notional / snapshot.equity
    if exposure > params["max_sector_percent"]:
        return _violation(
            rule,
            f"{sector} sector exposure ({exposure:.1%}) exceeds limit "
            f"({params['max_sector_percent']:.1%})",
            "Consider diversifying into other sectors",
        )
    return None


def check_volatility(rule, params, context, snapshot):
    if snapshot.symbol_beta > params["max_beta"]:
        return _violation(
            rule,
            f"Stock beta ({snapshot.symbol_beta:.2f}) exceeds maximum ({params['max_beta']:.2f})",
            "Consider lower-volatility alternatives",
        )
    vol = snapshot.historical_volatility
    if vol is not None and vol > params["max_historical_volatility"]:
        return _violation(
            rule,
            f"Historical volatility ({vol:.1%}) exceeds maximum "
            f"({params['max_historical_volatility']:.1%})",
            "Consider lower-volatility alternatives",
        )
    return None


def check_overtrading(rule, params, context, snapshot):
    max_day = int(params["max_trades_per_day"])
    max_hour = int(params["max_trades_per_hour"])
    if snapshot.trades_today >= max_day:
        return _violation(
            rule,
            f"Daily trade limit reached ({snapshot.trades_today}/{max_day})",
            "Wait until tomorrow or review trading frequency",
        )
    if snapshot.trades_last_hour >= max_hour:
        return _violation(
            rule,
            f"Hourly trade limit reached ({snapshot.trades_last_hour}/{max_hour})",
            "Wait before placing another trade",
        )
    return None


def check_research(rule, params, context, snapshot):
    # Research time is not tracked yet; the rule is a placeholder that always passes.
    return None


def check_emotional_trading(rule, params, context, snapshot):
    cooldown = timedelta(minutes=params["cooldown_after_loss_minutes"])
    if snapshot.last_loss_at is not None and snapshot.now - snapshot.last_loss_at < cooldown:
        return _violation(
            rule,
            "Cooling-off period active after recent loss",
            f"Wait {params['cooldown_after_loss_minutes']:.0f} minutes after losses before trading",
        )
    max_consecutive = int(params["max_consecutive_trades"])
    if snapshot.consecutive_trades >= max_consecutive:
        return _violation(
            rule,
            f"Too many consecutive trades ({snapshot.consecutive_trades})",
            "Take a break to avoid emotional trading",
        )
    return None


def default_rules() -> list[ValidationRule]:
    """Fresh copies of the built-in rule catalogue."""
    return [
        ValidationRule(
            id="position_size_limit",
            name="Position Size Limit",
            category="risk",
            severity="error",
            parameters={"max_position_percent": 0.10, "absolute_max_dollars": 50_000},
            effectiveness=0.8,
            adaptive_threshold=0.10,
        ),
        ValidationRule(
            id="daily_loss_limit",
            name="Daily Loss Limit",
            category="risk",
            severity="critical",
            parameters={"max_daily_loss_percent": 0.05, "absolute_max_dollars": 10_000},
            effectiveness=0.9,
            adaptive_threshold=0.05,
        ),
        ValidationRule(
            id="penny_stock_filter",
            name="Penny Stock Filter",
            category="risk",
            severity="warning",
            parameters={"min_price": 5.0, "min_market_cap": 100_000_000},
            effectiveness=0.7,
            adaptive_threshold=5.0,
        ),
        ValidationRule(
            id="sector_concentration",
            name="Sector Concentration Limit",
            category="risk",
            severity="warning",
            parameters={"max_sector_percent": 0.30},
            effectiveness=0.6,
            adaptive_threshold=0.30,
        ),
        ValidationRule(
            id="volatility_filter",
            name="High Volatility Filter",
            category="market",
            severity="warning",
            parameters={"max_beta": 2.0, "max_historical_volatility": 0.60},
            effectiveness=0.5,
            adaptive_threshold=2.0,
        ),
        ValidationRule(
            id="overtrading_prevention",
            name="Overtrading Prevention",
            category="behavioral",
            severity="warning",
            parameters={"max_trades_per_day": 10, "max_trades_per_hour": 3},
            effectiveness=0.7,
            adaptive_threshold=10,
        ),
        ValidationRule(
            id="insufficient_research",
            name="Research Requirement",
            category="behavioral",
            severity="warning",
            parameters={"min_research_time_minutes": 5},
            effectiveness=0.4,
            adaptive_threshold=5,
        ),
        ValidationRule(
            id="emotional_trading_filter",
            name="Emotional Trading Filter",
            category="behavioral",
            severity="warning",
            parameters={"cooldown_after_loss_minutes": 30, "max_consecutive_trades": 5},
            effectiveness=0.6,
            adaptive_threshold=30,
        ),
    ]


DEFAULT_CHECKS: dict[str, RuleCheck] = {
    "position_size_limit": check_position_size,
    "daily_loss_limit": check_daily_loss,
    "penny_stock_filter": check_penny_stock,
    "sector_concentration": check_sector_concentration,
    "volatility_filter": check_volatility,
    "overtrading_prevention": check_overtrading,
    "insufficient_research": check_research,
    "emotional_trading_filter": check_emotional_trading,
}
