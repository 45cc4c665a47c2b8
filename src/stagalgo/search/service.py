"""Market search and recommendations.

Feature vectors are derived from store data only (candles, reference tables,
oracle signals), so the same store state always yields the same results.
History, saved searches, alerts and recommendations are bounded lists.
"""

import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from stagalgo.analytics.indicators import annualized_volatility, atr, rsi
from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.bus import EventBus
from stagalgo.core.clock import CancelToken, Scheduler
from stagalgo.core.event_payloads import (
    RecommendationsUpdatedPayload,
    SearchAlertPayload,
    SearchCompletedPayload,
)
from stagalgo.core.types import Event, EventType, OracleSignal, Severity, Timeframe
from stagalgo.logging import get_logger, log_exception
from stagalgo.store.market_store import MarketStore

logger = get_logger(__name__)

HISTORY_CAP = 100
SAVED_SEARCH_CAP = 50
ALERT_CAP = 20
RECOMMENDATION_CAP = 20
ALERT_RELEVANCE = 0.8
ALERT_TOP_N = 10
PRICE_HISTORY_DAYS = 30
SENTIMENT_BAND = 0.1

Sentiment = Literal["bullish", "bearish", "neutral"]
SortBy = Literal["relevance", "momentum", "volume", "change", "alphabetical"]


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class SearchFilters(BaseModel):
    sectors: list[str] = Field(default_factory=list)
    sentiment: Sentiment | None = None
    beta_min: float | None = None
    beta_max: float | None = None
    price_min: float | None = None
    price_max: float | None = None


class SearchMode(BaseModel):
    query: str = ""
    filters: SearchFilters = Field(default_factory=SearchFilters)
    mode: Literal["simple", "advanced"] = "simple"
    sort_by: SortBy = "relevance"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=20, ge=1)
    offset: int = Field(default=0, ge=0)


class SearchQuery(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("search"))
    query_text: str
    filters: SearchFilters
    created_at: datetime


class SymbolFeatures(BaseModel):
    price: float
    change: float
    change_percent: float
    volume: float
    beta: float
    momentum: float
    volatility: float
    sentiment: Sentiment
    sector: str
    signal_count: int
    rsi: float | None = None
    atr: float | None = None
    price_history: list[float] = Field(default_factory=list)


class SearchResult(BaseModel):
    symbol: str
    name: str
    relevance: float
    matched_features: list[str]
    features: SymbolFeatures


class SearchContext(BaseModel):
    total_results: int
    processing_ms: float
    data_freshness: datetime
    applied_filters: SearchFilters
    suggested_queries: list[str]
    related_searches: list[str]


class RecommendationStats(BaseModel):
    current_price: float
    target_price: float | None = None
    stop_loss: float | None = None
    atr: float | None = None
    momentum: float
    volume: float
    avg_volume: float
    beta: float
    rsi: float | None = None
    sector: str


class Recommendation(BaseModel):
    symbol: str
    name: str
    score: float = Field(ge=0, le=1)
    direction: Sentiment
    confidence: float
    timeframe: Literal["short", "medium", "long"]
    why_bullets: list[str]
    key_stats: RecommendationStats
    related_signal_ids: list[str] = Field(default_factory=list)
    last_updated: datetime
    price_history: list[float] = Field(default_factory=list)


class SavedSearch(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("saved"))
    name: str
    query: SearchMode
    alerts_enabled: bool = False
    result_count: int = 0
    last_alert: datetime | None = None
    created_at: datetime


class SearchAlert(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("search_alert"))
    saved_search_id: str
    search_name: str
    new_results: list[SearchResult]
    triggered_at: datetime
    acknowledged: bool = False
    acknowledged_at: datetime | None = None


class MarketSearchService:
    """Ranked symbol search, saved-search alerts and recommendation upkeep."""

    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler,
        store: MarketStore,
        config: StagAlgoSettings | None = None,
    ) -> None:
        self._bus = bus
        self._scheduler = scheduler
        self._store = store
        self._clock = scheduler.clock
        self._settings = config or settings

        self._history: list[SearchQuery] = []
        self._saved: list[SavedSearch] = []
        self._alerts: list[SearchAlert] = []
        self._recommendations: list[Recommendation] = []
        self._last_update: datetime | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._tokens: list[CancelToken] = []

    def init(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(EventType.ORACLE_SIGNAL_ADDED, self._on_oracle_signal_added)
        ]
        cfg = self._settings
        self._tokens = [
            self._scheduler.schedule(
                timedelta(seconds=cfg.recommendation_interval_seconds),
                self.refresh_recommendations,
                name="search.recommendations",
            ),
            self._scheduler.schedule(
                timedelta(seconds=cfg.search_alert_interval_seconds),
                self.check_saved_search_alerts,
                name="search.alerts",
            ),
        ]
        logger.info("Market search service initialized")

    def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        for token in self._tokens:
            token.cancel()
        self._unsubscribers.clear()
        self._tokens.clear()

    # ── Search ──────────────────────────────────────────────────────────────

    def execute_search(self, mode: SearchMode) -> tuple[list[SearchResult], SearchContext]:
        started = time.perf_counter()
        now = self._clock.now()
        query = SearchQuery(query_text=mode.query, filters=mode.filters, created_at=now)
        self._history.insert(0, query)
        del self._history[HISTORY_CAP:]

        results = self._rank(mode)
        total = len(results)
        results = results[mode.offset : mode.offset + mode.limit]

        context = SearchContext(
            total_results=total,
            processing_ms=(time.perf_counter() - started) * 1000,
            data_freshness=now,
            applied_filters=mode.filters,
            suggested_queries=self._suggested_queries(mode.query),
            related_searches=self._related_searches(mode.query),
        )
        self._publish(
            EventType.SEARCH_COMPLETED,
            SearchCompletedPayload(
                query=mode.query,
                result_count=total,
                context={"symbols": [r.symbol for r in results], "sort_by": mode.sort_by},
            ),
        )
        logger.info(f"Search '{mode.query}' returned {total} results")
        return results, context

    def _rank(self, mode: SearchMode) -> list[SearchResult]:
        """Every matching symbol, sorted; records no history and publishes nothing."""
        results: list[SearchResult] = []
        for symbol in self._universe():
            features = self.symbol_features(symbol)
            if not self._matches(symbol, features, mode):
                continue
            results.append(
                SearchResult(
                    symbol=symbol,
                    name=self._name_of(symbol),
                    relevance=_relevance(symbol, features, mode),
                    matched_features=_matched_features(features, mode),
                    features=features,
                )
            )
        return _sort_results(results, mode.sort_by, mode.sort_order)

    def symbol_features(self, symbol: str) -> SymbolFeatures:
        """Deterministic feature vector for ``symbol`` from store data."""
        reference = self._store.reference
        daily = self._store.get_candles(symbol, Timeframe.D1, limit=PRICE_HISTORY_DAYS + 1)
        closes = [c.close for c in daily]
        latest = self._store.get_latest_candle(symbol)
        price = latest.close if latest is not None else (closes[-1] if closes else 0.0)

        change = 0.0
        if len(closes) >= 2:
            change = price - closes[-2]
        change_percent = change / (price - change) * 100 if price - change > 0 else 0.0

        signals = self._store.get_oracle_signals_for_symbol(symbol, limit=10)
        volatility = annualized_volatility(closes)
        rsi_value = rsi(closes, 14) if len(closes) > 14 else None
        return SymbolFeatures(
            price=price,
            change=change,
            change_percent=change_percent,
            volume=daily[-1].volume if daily else 0.0,
            beta=reference.beta(symbol),
            momentum=rsi_value / 100 if rsi_value is not None else 0.5,
            volatility=min(volatility, 1.0) if volatility is not None else 0.0,
            sentiment=_sentiment(signals),
            sector=self._sector_of(symbol),
            signal_count=len(signals),
            rsi=rsi_value,
            atr=atr(daily, 14),
            price_history=closes[-PRICE_HISTORY_DAYS:],
        )

    def _matches(self, symbol: str, features: SymbolFeatures, mode: SearchMode) -> bool:
        text = mode.query.strip().lower()
        filters = mode.filters
        text_match = bool(text) and (
            text in symbol.lower()
            or text in self._name_of(symbol).lower()
            or (bool(features.sector) and features.sector.lower() in text)
        )
        sector_match = bool(filters.sectors) and features.sector in filters.sectors
        if text or filters.sectors:
            if not (text_match or sector_match):
                return False

        if filters.sentiment is not None and features.sentiment != filters.sentiment:
            return False
        if filters.beta_min is not None and features.beta < filters.beta_min:
            return False
        if filters.beta_max is not None and features.beta > filters.beta_max:
            return False
        if features.price > 0:
            if filters.price_min is not None and features.price < filters.price_min:
                return False
            if filters.price_max is not None and features.price > filters.price_max:
                return False
        return True

    def _suggested_queries(self, query: str) -> list[str]:
        text = query.lower()
        sectors = sorted({self._sector_of(s) for s in self._universe()} - {"Unknown"})
        return [f"{sector.lower()} stocks" for sector in sectors if sector.lower() not in text][:5]

    def _related_searches(self, query: str) -> list[str]:
        text = query.lower()
        if not text:
            return []
        related = [
            s.name for s in self._saved
            if text in s.query.query.lower() or s.query.query.lower() in text
        ]
        return related[:3]

    # ── Saved searches and alerts ───────────────────────────────────────────

    def save_search(self, name: str, query: SearchMode, alerts_enabled: bool = False) -> SavedSearch:
        saved = SavedSearch(
            name=name, query=query, alerts_enabled=alerts_enabled, created_at=self._clock.now()
        )
        self._saved.insert(0, saved)
        del self._saved[SAVED_SEARCH_CAP:]
        logger.info(f"Search saved: {name} (alerts={alerts_enabled})")
        return saved

    def delete_saved_search(self, search_id: str) -> bool:
        for index, saved in enumerate(self._saved):
            if saved.id == search_id:
                del self._saved[index]
                logger.info(f"Deleted saved search: {saved.name}")
                return True
        return False

    def check_saved_search_alerts(self) -> list[SearchAlert]:
        """Re-run alert-enabled saved searches; alert on results above 0.8 relevance."""
        triggered: list[SearchAlert] = []
        for saved in [s for s in self._saved if s.alerts_enabled]:
            try:
                mode = saved.query.model_copy(update={"sort_by": "relevance", "sort_order": "desc"})
                ranked = self._rank(mode)
            except Exception as e:
                log_exception(logger, e, {"saved_search": saved.name})
                continue

            saved.result_count = len(ranked)
            relevant = [r for r in ranked[:ALERT_TOP_N] if r.relevance > ALERT_RELEVANCE]
            if not relevant:
                continue

            alert = SearchAlert(
                saved_search_id=saved.id,
                search_name=saved.name,
                new_results=relevant,
                triggered_at=self._clock.now(),
            )
            saved.last_alert = alert.triggered_at
            self._alerts.insert(0, alert)
            del self._alerts[ALERT_CAP:]
            triggered.append(alert)
            logger.info(f"Search alert triggered: {saved.name} ({len(relevant)} results)")
            self._publish(EventType.SEARCH_ALERT, SearchAlertPayload(alert=alert))
        return triggered

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.acknowledged = True
                alert.acknowledged_at = self._clock.now()
                return True
        return False

    def get_active_alerts(self) -> list[SearchAlert]:
        return [a for a in self._alerts if not a.acknowledged]

    def get_saved_searches(self) -> list[SavedSearch]:
        return list(self._saved)

    def get_search_history(self, limit: int = 20) -> list[SearchQuery]:
        return self._history[:limit]

    # ── Recommendations ─────────────────────────────────────────────────────

    def generate_recommendations(self, limit: int = 10) -> list[Recommendation]:
        recommendations = [
            self._recommend(symbol, self._store.get_oracle_signals_for_symbol(symbol, limit=10))
            for symbol in self._universe()
        ]
        recommendations.sort(key=lambda r: (-r.score, r.symbol))
        self._recommendations = recommendations[: min(limit, RECOMMENDATION_CAP)]
        self._last_update = self._clock.now()
        logger.info(
            f"Generated {len(self._recommendations)} recommendations; "
            f"top: {[r.symbol for r in self._recommendations[:3]]}"
        )
        return list(self._recommendations)

    def refresh_recommendations(self) -> None:
        self.generate_recommendations()
        self._publish_recommendations()

    def update_from_signal(self, signal: OracleSignal) -> None:
        """Fold a newly stored oracle signal into the recommendation list."""
        existing = next((r for r in self._recommendations if r.symbol == signal.symbol), None)
        if existing is not None:
            signals = self._store.get_oracle_signals_for_symbol(signal.symbol, limit=10)
            features = self.symbol_features(signal.symbol)
            bump = {Severity.CRITICAL: 0.2, Severity.HIGH: 0.1}.get(signal.severity, 0.0)
            updated = existing.model_copy(
                update={
                    "score": min(existing.score + bump, 1.0),
                    "why_bullets": _why_bullets(signals, features),
                    "related_signal_ids": [*existing.related_signal_ids, signal.id],
                    "last_updated": self._clock.now(),
                }
            )
            index = self._recommendations.index(existing)
            self._recommendations[index] = updated
        elif len(self._recommendations) < RECOMMENDATION_CAP:
            self._recommendations.append(self._recommend(signal.symbol, [signal]))
        self._recommendations.sort(key=lambda r: (-r.score, r.symbol))
        self._publish_recommendations()

    def get_recommendations(self, limit: int = 10) -> list[Recommendation]:
        return self._recommendations[:limit]

    @property
    def last_update(self) -> datetime | None:
        return self._last_update

    def _recommend(self, symbol: str, signals: list[OracleSignal]) -> Recommendation:
        features = self.symbol_features(symbol)
        score = 0.5
        if signals:
            weights = [s.confidence if s.confidence is not None else s.strength for s in signals]
            score += sum(weights) / len(weights) * 0.3
        score += features.momentum * 0.2
        score = max(0.0, min(score, 1.0))

        stop_loss = target = None
        if features.atr is not None and features.price > 0:
            stop_loss = max(features.price - 2 * features.atr, 0.0)
            target = features.price + 3 * features.atr

        return Recommendation(
            symbol=symbol,
            name=self._name_of(symbol),
            score=score,
            direction=features.sentiment,
            confidence=0.7 + 0.3 * min(len(signals) / 5, 1.0),
            timeframe="short" if features.volatility > 0.3 else "medium",
            why_bullets=_why_bullets(signals, features),
            key_stats=RecommendationStats(
                current_price=features.price,
                target_price=target,
                stop_loss=stop_loss,
                atr=features.atr,
                momentum=features.momentum,
                volume=features.volume,
                avg_volume=self._store.reference.average_daily_volume(symbol),
                beta=features.beta,
                rsi=features.rsi,
                sector=features.sector,
            ),
            related_signal_ids=[s.id for s in signals],
            last_updated=self._clock.now(),
            price_history=features.price_history[-14:],
        )

    def _publish_recommendations(self) -> None:
        self._publish(
            EventType.RECOMMENDATIONS_UPDATED,
            RecommendationsUpdatedPayload(symbols=tuple(r.symbol for r in self._recommendations)),
        )

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _universe(self) -> list[str]:
        symbols = {ref.symbol for ref in self._store.get_ref_symbols()}
        symbols.update(self._store.reference.known_symbols())
        return sorted(symbols)

    def _name_of(self, symbol: str) -> str:
        ref = self._store.get_ref_symbol(symbol)
        return ref.name if ref is not None and ref.name else self._store.reference.name(symbol)

    def _sector_of(self, symbol: str) -> str:
        ref = self._store.get_ref_symbol(symbol)
        if ref is not None and ref.sector != "Unknown":
            return ref.sector
        return self._store.reference.sector(symbol)

    def _on_oracle_signal_added(self, event: Event) -> None:
        try:
            self.update_from_signal(event.payload.signal)
        except Exception as e:
            log_exception(logger, e, {"symbol": event.payload.signal.symbol})

    def _publish(self, event_type: EventType, payload: Any) -> None:
        try:
            self._bus.emit(event_type, payload)
        except Exception as e:
            log_exception(logger, e, {"event_type": event_type.value})


def _sentiment(signals: list[OracleSignal]) -> Sentiment:
    net = 0.0
    for signal in signals:
        if signal.direction == "bull":
            net += signal.strength
        elif signal.direction == "bear":
            net -= signal.strength
    if net > SENTIMENT_BAND:
        return "bullish"
    if net < -SENTIMENT_BAND:
        return "bearish"
    return "neutral"


def _relevance(symbol: str, features: SymbolFeatures, mode: SearchMode) -> float:
    text = mode.query.strip().lower()
    score = 0.5
    if text and (text == symbol.lower() or features.sector.lower() in text):
        score += 0.3
    if mode.filters.sentiment is not None and mode.filters.sentiment == features.sentiment:
        score += 0.2
    if abs(features.change_percent) > 5:
        score += 0.1
    return min(score, 1.0)


def _matched_features(features: SymbolFeatures, mode: SearchMode) -> list[str]:
    matched = []
    if mode.filters.sentiment is not None and mode.filters.sentiment == features.sentiment:
        matched.append("sentiment")
    if features.sector in mode.filters.sectors:
        matched.append("sector")
    if features.signal_count:
        matched.append("signals")
    return matched


def _sort_results(results: list[SearchResult], sort_by: str, order: str) -> list[SearchResult]:
    keys: dict[str, Callable[[SearchResult], Any]] = {
        "relevance": lambda r: r.relevance,
        "momentum": lambda r: r.features.momentum,
        "volume": lambda r: r.features.volume,
        "change": lambda r: r.features.change_percent,
        "alphabetical": lambda r: r.symbol,
    }
    key = keys.get(sort_by, keys["relevance"])
    # stable sort: symbol order first, then the requested key
    ordered = sorted(results, key=lambda r: r.symbol)
    return sorted(ordered, key=key, reverse=order == "desc")


def _why_bullets(signals: list[OracleSignal], features: SymbolFeatures) -> list[str]:
    bullets: list[str] = []
    if features.momentum > 0.7:
        bullets.append(f"Strong momentum: {features.momentum * 100:.0f}% momentum score")
    elif features.rsi is not None and features.rsi < 30:
        bullets.append(f"Oversold: RSI {features.rsi:.0f}")

    priority = [s for s in signals if s.severity in (Severity.CRITICAL, Severity.HIGH)]
    if priority:
        bullets.append(f"{len(priority)} high-priority oracle signals detected")
    if features.sentiment == "bullish":
        bullets.append("Oracle signal flow is net bullish")
    elif features.sentiment == "bearish":
        bullets.append("Oracle signal flow is net bearish")
    if abs(features.change_percent) > 5:
        bullets.append(f"Large daily move: {features.change_percent:+.1f}%")

    if not bullets:
        bullets = ["Market conditions favor this position", "Risk/reward profile appears favorable"]
    return bullets[:3]
