"""Event topics and market/portfolio DTOs."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    """Closed set of bus topics. Each has one payload class in ``event_payloads``."""

    # Ingestion (published by external feeds)
    FEED_DATA_RECEIVED = "feed.data_received"
    CSV_IMPORTED = "cradle.csv_imported"
    BROKER_SNAPSHOT_RECEIVED = "broker.snapshot_received"
    ORACLE_SIGNAL_CREATED = "oracle.signal_created"
    MACRO_EVENT_RECEIVED = "macro.event_received"
    GEO_EVENT_RECEIVED = "geo.event_received"

    # Cleaning layer output
    CANDLE_PROCESSED = "repository.candle_processed"
    PORTFOLIO_PROCESSED = "repository.portfolio_processed"
    MARKET_DATA_CLEANED = "repository.market_data_cleaned"

    # Store notifications
    CANDLE_STORED = "bid.candle_stored"
    PORTFOLIO_UPDATED = "bid.portfolio_updated"
    INDICATORS_UPDATED = "bid.indicators_updated"
    RISK_METRICS_UPDATED = "bid.risk_metrics_updated"
    ORACLE_SIGNAL_ADDED = "bid.oracle_signal_added"

    # Trade lifecycle
    TRADE_APPROVED = "trade.approved"
    TRADE_FINAL_APPROVAL = "trade.final_approval"
    TRADE_POSITION_BLOCKED = "trade.position_blocked"
    TRADE_POSITION_MODIFIED = "trade.position_modified"
    TRADE_EXECUTED = "trade.executed"
    TRADE_FAILED = "trade.failed"
    TRADE_CLOSED = "trade.closed"

    # Validation
    VALIDATION_VIOLATION = "validation.violation"
    RULE_UPDATED = "validation.rule_updated"
    USER_LEVEL_PROGRESSION = "user.level_progression"

    # Governance
    GOVERNANCE_DECISION = "governance.decision"
    COLLAPSE_SIGNAL = "collapse.signal"
    RISK_ALERT = "risk.alert"

    # Search
    SEARCH_COMPLETED = "search.completed"
    SEARCH_ALERT = "search.alert"
    RECOMMENDATIONS_UPDATED = "search.recommendations_updated"


@dataclass
class Event:
    """Bus envelope: a topic and its typed payload."""

    event_type: EventType
    payload: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Timeframe(str, Enum):
    """Candle timeframes kept by the store."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    D1 = "D1"

    @property
    def duration(self) -> timedelta:
        return _TIMEFRAME_DURATIONS[self]


_TIMEFRAME_DURATIONS = {
    Timeframe.M1: timedelta(minutes=1),
    Timeframe.M5: timedelta(minutes=5),
    Timeframe.M15: timedelta(minutes=15),
    Timeframe.H1: timedelta(hours=1),
    Timeframe.D1: timedelta(days=1),
}


Direction = Literal["bull", "bear", "neutral"]

_DIRECTION_ALIASES = {"bullish": "bull", "bearish": "bear", "long": "bull", "short": "bear"}


def _normalize_direction(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        return _DIRECTION_ALIASES.get(lowered, lowered)
    return value


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RefSymbol(BaseModel):
    """Reference data for a tradable instrument."""

    symbol: str
    name: str = ""
    sector: str = "Unknown"
    industry: str = ""
    asset_type: str = "equity"
    exchange: str = ""
    is_active: bool = True
    updated_ts: datetime | None = Field(
        default=None, validation_alias=AliasChoices("updated_ts", "updated_at", "last_updated")
    )

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("symbol must not be empty")
        return v

    @field_validator("updated_ts")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None


class Candle(BaseModel):
    """OHLCV bar. Accepts the short keys (``o``, ``h``, ``tf``...) used by feeds."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: Timeframe = Field(validation_alias=AliasChoices("timeframe", "tf"))
    ts: datetime = Field(validation_alias=AliasChoices("ts", "timestamp"))
    open: float = Field(ge=0, validation_alias=AliasChoices("open", "o"))
    high: float = Field(ge=0, validation_alias=AliasChoices("high", "h"))
    low: float = Field(ge=0, validation_alias=AliasChoices("low", "l"))
    close: float = Field(ge=0, validation_alias=AliasChoices("close", "c"))
    volume: float = Field(default=0.0, ge=0, validation_alias=AliasChoices("volume", "v"))
    vwap: float | None = Field(default=None, ge=0)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("ts")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class IndicatorSnapshot(BaseModel):
    """Derived indicators for one (symbol, timeframe) at the latest candle."""

    symbol: str
    timeframe: Timeframe
    ts: datetime
    ma20: float | None = None
    ma50: float | None = None
    ma200: float | None = None
    rsi14: float | None = None
    macd: float | None = None
    atr14: float | None = None
    bb_up: float | None = None
    bb_dn: float | None = None
    vwap_sess: float | None = None


class PortfolioSnapshot(BaseModel):
    """Account-level equity and cash at a point in time."""

    ts: datetime
    equity: float
    cash: float
    buying_power: float | None = Field(
        default=None, validation_alias=AliasChoices("buying_power", "buyingPower")
    )

    @field_validator("ts")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class Position(BaseModel):
    """Open position. Accepts broker camelCase and store short keys."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float = Field(validation_alias=AliasChoices("quantity", "qty"))
    avg_cost: float = Field(
        validation_alias=AliasChoices("avg_cost", "averagePrice", "avg_price", "average_price")
    )
    market_value: float = Field(
        default=0.0, validation_alias=AliasChoices("market_value", "marketValue", "mv")
    )
    unrealized_pnl: float = Field(
        default=0.0, validation_alias=AliasChoices("unrealized_pnl", "unrealizedPnL", "unr_pnl")
    )
    realized_pnl: float = Field(
        default=0.0, validation_alias=AliasChoices("realized_pnl", "realizedPnL", "r_pnl")
    )
    updated_ts: datetime | None = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def cost_basis(self) -> float:
        return abs(self.avg_cost * self.quantity)

    @property
    def unrealized_pnl_pct(self) -> float:
        """Unrealized P&L as percent of cost basis (0 when the basis is zero)."""
        basis = self.cost_basis
        if basis == 0:
            return 0.0
        return self.unrealized_pnl / basis * 100


class PortfolioRiskSnapshot(BaseModel):
    ts: datetime
    concentration_top: float
    beta: float
    drawdown: float
    var95: float
    es95: float
    liquidity_score: float
    risk_state: float
    position_count: int = 0
    total_market_value: float = 0.0


class PositionRisk(BaseModel):
    symbol: str
    ts: datetime
    beta: float
    adv_pct: float
    spread_est: float
    stop_suggest: float
    tp_suggest: float


class OracleSignal(BaseModel):
    """Analyst/oracle signal attached to a symbol.

    ``severity`` and ``factors`` are optional; collapse scoring falls back to
    defaults when they are absent.
    """

    id: str
    symbol: str
    signal_type: str = Field(validation_alias=AliasChoices("signal_type", "type"))
    strength: float = Field(ge=0, le=1)
    direction: Direction = "neutral"
    source: str = "oracle"
    ts: datetime
    summary: str = ""
    severity: Severity | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
    factors: dict[str, float] = Field(default_factory=dict)

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> Any:
        return _normalize_direction(v)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("ts")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class PerformanceDaily(BaseModel):
    day: date
    equity: float
    ret_d: float
    ret_cum: float
    bench_ret_d: float
    bench_diff: float


class PositionPerformanceDaily(BaseModel):
    day: date
    symbol: str
    ret_d: float
    contribution: float


class MacroEvent(BaseModel):
    """Scheduled economic release (CPI, NFP, FOMC...) with its surprise."""

    id: str
    ts: datetime = Field(validation_alias=AliasChoices("ts", "date"))
    event_type: str = Field(validation_alias=AliasChoices("event_type", "type"))
    actual: float | None = None
    consensus: float | None = None
    surprise: float | None = None
    impact: Direction = "neutral"

    @field_validator("impact", mode="before")
    @classmethod
    def normalize_impact(cls, v: Any) -> Any:
        return _normalize_direction(v)

    @field_validator("ts")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class GeoEvent(BaseModel):
    """Geopolitical event with the assets it is expected to move."""

    id: str
    ts: datetime = Field(validation_alias=AliasChoices("ts", "ts_start"))
    region: str
    event_type: str = Field(validation_alias=AliasChoices("event_type", "type"))
    severity: int = Field(default=1, ge=1, le=5)
    affected_assets: list[str] = Field(default_factory=list)
    impact_dir: Direction = "neutral"
    confidence: float = Field(default=0.5, ge=0, le=1)

    @field_validator("impact_dir", mode="before")
    @classmethod
    def normalize_impact(cls, v: Any) -> Any:
        return _normalize_direction(v)

    @field_validator("ts")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)
