"""Typed payload dataclasses for every EventType on the bus.

Each ``EventType`` maps to exactly one frozen, slotted dataclass. The mapping
lives in ``PAYLOAD_REGISTRY`` and ``EventBus.publish`` refuses an event whose
payload is not an instance of the registered class, so a publisher and its
subscribers cannot drift apart on the shape of a topic.

Payload groups follow the order of ``EventType`` in ``types.py``:

1. Ingestion     : raw feed records, CSV imports, broker snapshots, oracle
                    signals and auxiliary macro/geo events.
2. Cleaning layer: candles, portfolio snapshots and quotes that passed the
                    repository's checks.
3. Store         : notifications emitted after the store mutates.
4. Trade         : approval, governance outcome, execution and close.
5. Validation    : rule violations, rule edits and user progression.
6. Governance    : decisions, collapse signals and risk alerts.
7. Search        : completed searches, saved-search alerts and refreshed
                    recommendations.
"""

from __future__ import annotations

from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime
from typing import TYPE_CHECKING, Any

from stagalgo.core.types import EventType

if TYPE_CHECKING:
    from stagalgo.core.types import (
        Candle,
        GeoEvent,
        MacroEvent,
        OracleSignal,
        PortfolioRiskSnapshot,
        PortfolioSnapshot,
        Position,
    )
    from stagalgo.governance.models import (
        CollapseSignal,
        GovernanceDecision,
        RiskAlert,
        TradeIntent,
    )
    from stagalgo.ingest.repository import CleanedQuote
    from stagalgo.search.service import SearchAlert
    from stagalgo.validation.rules import ValidationRule, Violation

# ──────────────────────────────────────────────────────────────────────────────
# 1. INGESTION PAYLOADS
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class FeedDataPayload:
    """Payload for ``EventType.FEED_DATA_RECEIVED``.

    ``feed`` is the raw record as received: ``id``, ``source``, ``timestamp``,
    ``data_type``, ``raw_data`` and ``received_at``. The repository validates
    it; nothing downstream reads it directly.
    """

    feed: dict[str, Any]


@dataclass(slots=True, frozen=True)
class CsvImportedPayload:
    """Payload for ``EventType.CSV_IMPORTED``: parsed rows of an uploaded file."""

    rows: tuple[dict[str, Any], ...]
    source: str = "csv"


@dataclass(slots=True, frozen=True)
class BrokerSnapshotPayload:
    """Payload for ``EventType.BROKER_SNAPSHOT_RECEIVED``.

    ``snapshot`` carries ``equity``, ``cash``, ``positions`` (broker keys) and
    an optional ``timestamp``.
    """

    snapshot: dict[str, Any]


@dataclass(slots=True, frozen=True)
class OracleSignalCreatedPayload:
    """Payload for ``EventType.ORACLE_SIGNAL_CREATED``: a mapping or ``OracleSignal``."""

    signal: OracleSignal | dict[str, Any]


@dataclass(slots=True, frozen=True)
class MacroEventPayload:
    event: MacroEvent | dict[str, Any]


@dataclass(slots=True, frozen=True)
class GeoEventPayload:
    event: GeoEvent | dict[str, Any]


# ──────────────────────────────────────────────────────────────────────────────
# 2. CLEANING LAYER PAYLOADS
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class CandleProcessedPayload:
    candle: Candle


@dataclass(slots=True, frozen=True)
class PortfolioProcessedPayload:
    """Payload for ``EventType.PORTFOLIO_PROCESSED``.

    ``positions`` is ``None`` when the snapshot did not carry a position list;
    an empty tuple means "no open positions" and clears the store's map.
    """

    portfolio: PortfolioSnapshot
    positions: tuple[Position, ...] | None = None


@dataclass(slots=True, frozen=True)
class MarketDataCleanedPayload:
    quote: CleanedQuote


# ──────────────────────────────────────────────────────────────────────────────
# 3. STORE PAYLOADS
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class CandleStoredPayload:
    symbol: str
    timeframe: str
    ts: datetime


@dataclass(slots=True, frozen=True)
class PortfolioUpdatedPayload:
    equity: float
    cash: float
    position_count: int
    ts: datetime


@dataclass(slots=True, frozen=True)
class IndicatorsUpdatedPayload:
    series_updated: int
    ts: datetime


@dataclass(slots=True, frozen=True)
class RiskMetricsUpdatedPayload:
    snapshot: PortfolioRiskSnapshot


@dataclass(slots=True, frozen=True)
class OracleSignalAddedPayload:
    signal: OracleSignal


# ──────────────────────────────────────────────────────────────────────────────
# 4. TRADE PAYLOADS
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class TradeApprovedPayload:
    """Payload for ``EventType.TRADE_APPROVED``: a trade that passed validation."""

    trade: TradeIntent


@dataclass(slots=True, frozen=True)
class TradeFinalApprovalPayload:
    trade: TradeIntent
    decision: GovernanceDecision


@dataclass(slots=True, frozen=True)
class TradePositionBlockedPayload:
    trade: TradeIntent
    decision: GovernanceDecision
    alert: RiskAlert


@dataclass(slots=True, frozen=True)
class TradePositionModifiedPayload:
    original: TradeIntent
    modified: TradeIntent
    decision: GovernanceDecision
    alert: RiskAlert


@dataclass(slots=True, frozen=True)
class TradeExecutedPayload:
    trade_id: str
    user_id: str
    symbol: str
    side: str
    quantity: float
    price: float | None
    order_id: str


@dataclass(slots=True, frozen=True)
class TradeFailedPayload:
    trade_id: str
    user_id: str
    symbol: str
    error: str


@dataclass(slots=True, frozen=True)
class TradeClosedPayload:
    """Payload for ``EventType.TRADE_CLOSED``: realized outcome used for rule learning."""

    trade_id: str
    user_id: str
    symbol: str
    realized_pnl: float


# ──────────────────────────────────────────────────────────────────────────────
# 5. VALIDATION PAYLOADS
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class ValidationViolationPayload:
    user_id: str
    symbol: str
    violation: Violation
    trade_id: str | None = None


@dataclass(slots=True, frozen=True)
class RuleUpdatedPayload:
    rule: ValidationRule


@dataclass(slots=True, frozen=True)
class UserLevelProgressionPayload:
    user_id: str
    new_level: str


# ──────────────────────────────────────────────────────────────────────────────
# 6. GOVERNANCE PAYLOADS
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class GovernanceDecisionPayload:
    trade: TradeIntent
    decision: GovernanceDecision


@dataclass(slots=True, frozen=True)
class CollapseSignalPayload:
    signal: CollapseSignal


@dataclass(slots=True, frozen=True)
class RiskAlertPayload:
    alert: RiskAlert


# ──────────────────────────────────────────────────────────────────────────────
# 7. SEARCH PAYLOADS
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class SearchCompletedPayload:
    query: str
    result_count: int
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SearchAlertPayload:
    alert: SearchAlert


@dataclass(slots=True, frozen=True)
class RecommendationsUpdatedPayload:
    symbols: tuple[str, ...]


# ──────────────────────────────────────────────────────────────────────────────
# REGISTRY
# ──────────────────────────────────────────────────────────────────────────────

PAYLOAD_REGISTRY: dict[EventType, type] = {
    EventType.FEED_DATA_RECEIVED: FeedDataPayload,
    EventType.CSV_IMPORTED: CsvImportedPayload,
    EventType.BROKER_SNAPSHOT_RECEIVED: BrokerSnapshotPayload,
    EventType.ORACLE_SIGNAL_CREATED: OracleSignalCreatedPayload,
    EventType.MACRO_EVENT_RECEIVED: MacroEventPayload,
    EventType.GEO_EVENT_RECEIVED: GeoEventPayload,
    EventType.CANDLE_PROCESSED: CandleProcessedPayload,
    EventType.PORTFOLIO_PROCESSED: PortfolioProcessedPayload,
    EventType.MARKET_DATA_CLEANED: MarketDataCleanedPayload,
    EventType.CANDLE_STORED: CandleStoredPayload,
    EventType.PORTFOLIO_UPDATED: PortfolioUpdatedPayload,
    EventType.INDICATORS_UPDATED: IndicatorsUpdatedPayload,
    EventType.RISK_METRICS_UPDATED: RiskMetricsUpdatedPayload,
    EventType.ORACLE_SIGNAL_ADDED: OracleSignalAddedPayload,
    EventType.TRADE_APPROVED: TradeApprovedPayload,
    EventType.TRADE_FINAL_APPROVAL: TradeFinalApprovalPayload,
    EventType.TRADE_POSITION_BLOCKED: TradePositionBlockedPayload,
    EventType.TRADE_POSITION_MODIFIED: TradePositionModifiedPayload,
    EventType.TRADE_EXECUTED: TradeExecutedPayload,
    EventType.TRADE_FAILED: TradeFailedPayload,
    EventType.TRADE_CLOSED: TradeClosedPayload,
    EventType.VALIDATION_VIOLATION: ValidationViolationPayload,
    EventType.RULE_UPDATED: RuleUpdatedPayload,
    EventType.USER_LEVEL_PROGRESSION: UserLevelProgressionPayload,
    EventType.GOVERNANCE_DECISION: GovernanceDecisionPayload,
    EventType.COLLAPSE_SIGNAL: CollapseSignalPayload,
    EventType.RISK_ALERT: RiskAlertPayload,
    EventType.SEARCH_COMPLETED: SearchCompletedPayload,
    EventType.SEARCH_ALERT: SearchAlertPayload,
    EventType.RECOMMENDATIONS_UPDATED: RecommendationsUpdatedPayload,
}


def payload_class_for(event_type: EventType) -> type:
    """Return the payload class registered for ``event_type``.

    Raises:
        KeyError: If the topic has no registered payload.
    """
    return PAYLOAD_REGISTRY[event_type]


def validate_payload(event_type: EventType, payload: Any) -> bool:
    """Return ``True`` if ``payload`` is an instance of the topic's payload class."""
    payload_class = PAYLOAD_REGISTRY.get(event_type)
    if payload_class is None:
        return False
    return isinstance(payload, payload_class)


def required_fields(event_type: EventType) -> set[str]:
    """Names of the payload fields a publisher must always supply."""
    payload_class = PAYLOAD_REGISTRY[event_type]
    return {
        f.name
        for f in fields(payload_class)
        if f.default is MISSING and f.default_factory is MISSING
    }


def coverage_report() -> dict[str, bool]:
    """Map every EventType value to whether it has a registered payload."""
    return {et.value: et in PAYLOAD_REGISTRY for et in EventType}
