"""Market/portfolio truth store ("BID Core").

Holds the current view of reference symbols, candles, derived indicators,
the portfolio snapshot with its positions, risk metrics, oracle signals and
auxiliary macro/geo feeds. Every other component reads from here.

Ingestion never raises: malformed records are logged, counted and skipped.
Reads never block and return empty containers or ``None`` when data is
absent. Periodic work (indicators, risk, retention, performance rollup) is
registered on the injected ``Scheduler`` by ``init()``.
"""

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from stagalgo.analytics import risk as risk_calc
from stagalgo.analytics.indicators import compute_indicator_snapshot
from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.bus import EventBus
from stagalgo.core.clock import CancelToken, ClockProtocol, Scheduler
from stagalgo.core.event_payloads import (
    CandleStoredPayload,
    IndicatorsUpdatedPayload,
    OracleSignalAddedPayload,
    PortfolioUpdatedPayload,
    RiskMetricsUpdatedPayload,
)
from stagalgo.core.types import (
    Candle,
    Event,
    EventType,
    GeoEvent,
    IndicatorSnapshot,
    MacroEvent,
    OracleSignal,
    PerformanceDaily,
    PortfolioRiskSnapshot,
    PortfolioSnapshot,
    Position,
    PositionPerformanceDaily,
    PositionRisk,
    RefSymbol,
    Timeframe,
)
from stagalgo.logging import get_logger, log_exception
from stagalgo.store.reference import (
    ReferenceData,
    default_geo_events,
    default_macro_events,
    default_oracle_signals,
    default_ref_symbols,
)
from stagalgo.store.retention import prune_before, trim_to, upsert_sorted

logger = get_logger(__name__)

BENCHMARK_DAILY_RETURN = 0.001  # placeholder until a benchmark series is ingested
DRAWDOWN_LOOKBACK_DAYS = 30
MACRO_EVENT_CAP, MACRO_EVENT_KEEP = 1000, 500
GEO_EVENT_CAP, GEO_EVENT_KEEP = 500, 250
NO_PORTFOLIO_AGE_MINUTES = 999.0

SeriesKey = tuple[str, Timeframe]


@dataclass(frozen=True)
class PortfolioState:
    """Portfolio snapshot and its position map, always replaced together."""

    snapshot: PortfolioSnapshot | None = None
    positions: Mapping[str, Position] = field(default_factory=lambda: MappingProxyType({}))
    received_at: datetime | None = None


class MarketStore:
    """In-memory truth store for market and portfolio state."""

    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler,
        reference_data: ReferenceData | None = None,
        config: StagAlgoSettings | None = None,
    ) -> None:
        self._bus = bus
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._reference = reference_data or ReferenceData()
        self._settings = config or settings
        self._lock = threading.RLock()

        self._ref_symbols: dict[str, RefSymbol] = {}
        self._candles: dict[SeriesKey, list[Candle]] = {}
        self._indicators: dict[SeriesKey, list[IndicatorSnapshot]] = {}
        self._portfolio = PortfolioState()
        self._risk_history: list[PortfolioRiskSnapshot] = []
        self._position_risk: dict[str, list[PositionRisk]] = {}
        self._oracle_signals: list[OracleSignal] = []
        self._macro_events: list[MacroEvent] = []
        self._geo_events: list[GeoEvent] = []
        self._perf_daily: list[PerformanceDaily] = []
        self._position_perf: dict[str, list[PositionPerformanceDaily]] = {}

        self._rejected_records = 0
        self._tokens: list[CancelToken] = []
        self._unsubscribers: list[Callable[[], None]] = []
        self._initialized = False

    @property
    def reference(self) -> ReferenceData:
        return self._reference

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def init(self) -> None:
        """Subscribe to the cleaning-layer topics and register periodic jobs."""
        if self._initialized:
            return
        subscriptions = {
            EventType.CANDLE_PROCESSED: self._on_candle_processed,
            EventType.PORTFOLIO_PROCESSED: self._on_portfolio_processed,
            EventType.ORACLE_SIGNAL_CREATED: self._on_oracle_signal_created,
            EventType.MACRO_EVENT_RECEIVED: self._on_macro_event,
            EventType.GEO_EVENT_RECEIVED: self._on_geo_event,
        }
        for event_type, handler in subscriptions.items():
            self._unsubscribers.append(self._bus.subscribe(event_type, handler))

        cfg = self._settings
        self._tokens = [
            self._scheduler.schedule(
                timedelta(seconds=cfg.indicator_interval_seconds),
                self.recompute_indicators,
                name="store.indicators",
            ),
            self._scheduler.schedule(
                timedelta(seconds=cfg.risk_interval_seconds),
                self.recompute_risk,
                name="store.risk",
            ),
            self._scheduler.schedule(
                timedelta(seconds=cfg.retention_interval_seconds),
                self.sweep_retention,
                name="store.retention",
            ),
            self._scheduler.schedule(
                timedelta(seconds=cfg.performance_interval_seconds),
                self.rollup_performance,
                name="store.performance",
            ),
        ]
        self._initialized = True
        logger.info("Market store initialized")

    def shutdown(self) -> None:
        for token in self._tokens:
            token.cancel()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._tokens.clear()
        self._unsubscribers.clear()
        self._initialized = False
        logger.info("Market store shut down")

    def seed_reference_data(self) -> None:
        """Load the default symbols, oracle signals and macro/geo events."""
        now = self._clock.now()
        for ref in default_ref_symbols():
            self.ingest_ref_symbol(ref)
        for signal in default_oracle_signals(now):
            self.ingest_oracle_signal(signal)
        for macro in default_macro_events(now):
            self.ingest_macro_event(macro)
        for geo in default_geo_events(now):
            self.ingest_geo_event(geo)
        logger.info(f"Seeded {len(self._ref_symbols)} reference symbols")

    # ── Ingestion ───────────────────────────────────────────────────────────

    def ingest_ref_symbol(self, ref: RefSymbol | Mapping[str, Any]) -> None:
        parsed = self._parse(RefSymbol, ref, "ref_symbol")
        if parsed is None:
            return
        if parsed.updated_ts is None:
            parsed = parsed.model_copy(update={"updated_ts": self._clock.now()})
        with self._lock:
            self._ref_symbols[parsed.symbol] = parsed

    def ingest_candle(self, candle: Candle | Mapping[str, Any]) -> None:
        """Upsert a candle into its (symbol, timeframe) series.

        A candle with the same timestamp as an existing one replaces it.
        """
        parsed = self._parse(Candle, candle, "candle")
        if parsed is None:
            return
        key = (parsed.symbol, parsed.timeframe)
        cutoff = self._clock.now() - timedelta(
            days=self._settings.candle_retention_days(parsed.timeframe.value)
        )
        with self._lock:
            series = self._candles.setdefault(key, [])
            upsert_sorted(series, parsed, key=_ts)
            prune_before(series, cutoff, key=_ts)

        self._notify(
            EventType.CANDLE_STORED,
            CandleStoredPayload(symbol=parsed.symbol, timeframe=parsed.timeframe.value, ts=parsed.ts),
        )

    def ingest_portfolio_update(self, payload: Mapping[str, Any]) -> None:
        """Replace the portfolio snapshot, and the position map when ``positions`` is present.

        ``payload`` is ``{"portfolio": {...}, "positions": [...]}``. A missing
        ``positions`` key keeps the current positions; an empty list clears them.
        """
        try:
            portfolio_raw = dict(payload["portfolio"])
            portfolio_raw.setdefault("ts", self._clock.now())
            snapshot = PortfolioSnapshot.model_validate(portfolio_raw)
            positions: list[Position] | None = None
            if payload.get("positions") is not None:
                positions = [
                    p if isinstance(p, Position) else Position.model_validate(p)
                    for p in payload["positions"]
                ]
        except (KeyError, TypeError, ValueError) as e:
            self._reject("portfolio", e)
            return
        self.apply_portfolio(snapshot, positions)

    def apply_portfolio(
        self, snapshot: PortfolioSnapshot, positions: list[Position] | tuple[Position, ...] | None
    ) -> None:
        """Swap in a validated snapshot (and positions, unless ``None``) as one unit."""
        with self._lock:
            if positions is None:
                position_map = self._portfolio.positions
            else:
                position_map = MappingProxyType(
                    {
                        p.symbol: p if p.updated_ts else p.model_copy(update={"updated_ts": snapshot.ts})
                        for p in positions
                    }
                )
            self._portfolio = PortfolioState(
                snapshot=snapshot, positions=position_map, received_at=self._clock.now()
            )

        self._notify(
            EventType.PORTFOLIO_UPDATED,
            PortfolioUpdatedPayload(
                equity=snapshot.equity,
                cash=snapshot.cash,
                position_count=len(position_map),
                ts=snapshot.ts,
            ),
        )

    def ingest_oracle_signal(self, signal: OracleSignal | Mapping[str, Any]) -> None:
        parsed = self._parse(OracleSignal, signal, "oracle_signal")
        if parsed is None:
            return
        cutoff = self._clock.now() - timedelta(days=self._settings.oracle_retention_days)
        with self._lock:
            self._oracle_signals = [s for s in self._oracle_signals if s.id != parsed.id]
            upsert_sorted(self._oracle_signals, parsed, key=_ts)
            prune_before(self._oracle_signals, cutoff, key=_ts)

        self._notify(EventType.ORACLE_SIGNAL_ADDED, OracleSignalAddedPayload(signal=parsed))

    def ingest_macro_event(self, event: MacroEvent | Mapping[str, Any]) -> None:
        parsed = self._parse(MacroEvent, event, "macro_event")
        if parsed is None:
            return
        with self._lock:
            upsert_sorted(self._macro_events, parsed, key=_ts)
            trim_to(self._macro_events, MACRO_EVENT_CAP, MACRO_EVENT_KEEP)

    def ingest_geo_event(self, event: GeoEvent | Mapping[str, Any]) -> None:
        parsed = self._parse(GeoEvent, event, "geo_event")
        if parsed is None:
            return
        with self._lock:
            upsert_sorted(self._geo_events, parsed, key=_ts)
            trim_to(self._geo_events, GEO_EVENT_CAP, GEO_EVENT_KEEP)

    # ── Bus handlers ────────────────────────────────────────────────────────

    def _on_candle_processed(self, event: Event) -> None:
        self.ingest_candle(event.payload.candle)

    def _on_portfolio_processed(self, event: Event) -> None:
        self.apply_portfolio(event.payload.portfolio, event.payload.positions)

    def _on_oracle_signal_created(self, event: Event) -> None:
        self.ingest_oracle_signal(event.payload.signal)

    def _on_macro_event(self, event: Event) -> None:
        self.ingest_macro_event(event.payload.event)

    def _on_geo_event(self, event: Event) -> None:
        self.ingest_geo_event(event.payload.event)

    # ── Periodic work ───────────────────────────────────────────────────────

    def recompute_indicators(self) -> int:
        """Refresh indicators for every series with enough candles.

        Returns:
            Number of series updated.
        """
        cutoff = self._clock.now() - timedelta(days=self._settings.indicator_retention_days)
        with self._lock:
            series_items = [
                (key, list(series))
                for key, series in self._candles.items()
                if len(series) >= self._settings.min_candles_for_indicators
            ]

        updated = 0
        for key, candles in series_items:
            snapshot = compute_indicator_snapshot(candles)
            with self._lock:
                history = self._indicators.setdefault(key, [])
                upsert_sorted(history, snapshot, key=_ts)
                prune_before(history, cutoff, key=_ts)
            updated += 1

        if updated:
            logger.debug(f"Indicators recomputed for {updated} series")
            self._notify(
                EventType.INDICATORS_UPDATED,
                IndicatorsUpdatedPayload(series_updated=updated, ts=self._clock.now()),
            )
        return updated

    def recompute_risk(self) -> PortfolioRiskSnapshot | None:
        """Compute portfolio and per-position risk from the current snapshot.

        Skipped (returns ``None``) without a portfolio snapshot or open positions.
        """
        state = self._portfolio
        if state.snapshot is None or not state.positions:
            return None

        now = self._clock.now()
        positions = list(state.positions.values())
        equity = state.snapshot.equity
        ref = self._reference

        with self._lock:
            cum_returns = [p.ret_cum for p in self._perf_daily[-DRAWDOWN_LOOKBACK_DAYS:]]

        concentration = risk_calc.concentration_top(positions, equity)
        beta = risk_calc.portfolio_beta(positions, equity, ref.beta)
        drawdown = risk_calc.max_drawdown_pct(cum_returns)
        total_mv = sum(p.market_value for p in positions)
        var95 = risk_calc.value_at_risk_95(total_mv)
        snapshot = PortfolioRiskSnapshot(
            ts=now,
            concentration_top=concentration,
            beta=beta,
            drawdown=drawdown,
            var95=var95,
            es95=risk_calc.expected_shortfall_95(var95),
            liquidity_score=risk_calc.liquidity_score(positions, ref.average_daily_volume),
            risk_state=risk_calc.risk_state_score(drawdown, concentration, beta),
            position_count=len(positions),
            total_market_value=total_mv,
        )

        risk_cutoff = now - timedelta(days=self._settings.risk_retention_days)
        position_cutoff = now - timedelta(days=self._settings.position_risk_retention_days)
        with self._lock:
            upsert_sorted(self._risk_history, snapshot, key=_ts)
            prune_before(self._risk_history, risk_cutoff, key=_ts)
            for position in positions:
                entry = risk_calc.position_risk(
                    position,
                    now,
                    beta=ref.beta(position.symbol),
                    adv=ref.average_daily_volume(position.symbol),
                    spread=ref.spread(position.symbol),
                )
                history = self._position_risk.setdefault(position.symbol, [])
                upsert_sorted(history, entry, key=_ts)
                prune_before(history, position_cutoff, key=_ts)

        logger.debug(
            f"Risk recomputed: state={snapshot.risk_state:.1f} conc={concentration:.1f}% "
            f"beta={beta:.2f} var95={var95:.2f}"
        )
        self._notify(EventType.RISK_METRICS_UPDATED, RiskMetricsUpdatedPayload(snapshot=snapshot))
        return snapshot

    def rollup_performance(self) -> PerformanceDaily | None:
        """Record today's portfolio and per-position return.

        Re-running on the same day replaces that day's entry.
        """
        state = self._portfolio
        if state.snapshot is None:
            return None

        now = self._clock.now()
        today = now.date()
        equity = state.snapshot.equity
        with self._lock:
            previous = [p for p in self._perf_daily if p.day < today]
        prior = previous[-1] if previous else None

        if prior is not None and prior.equity > 0:
            ret_d = (equity - prior.equity) / prior.equity
        else:
            ret_d = 0.0
        ret_cum = (1 + (prior.ret_cum if prior else 0.0)) * (1 + ret_d) - 1
        entry = PerformanceDaily(
            day=today,
            equity=equity,
            ret_d=ret_d,
            ret_cum=ret_cum,
            bench_ret_d=BENCHMARK_DAILY_RETURN,
            bench_diff=ret_d - BENCHMARK_DAILY_RETURN,
        )

        cutoff = today - timedelta(days=self._settings.performance_retention_days)
        with self._lock:
            self._perf_daily = [p for p in self._perf_daily if p.day != today and p.day >= cutoff]
            self._perf_daily.append(entry)
            self._perf_daily.sort(key=lambda p: p.day)
            for position in state.positions.values():
                basis = position.cost_basis
                pos_ret = position.unrealized_pnl / basis if basis else 0.0
                weight = position.market_value / equity if equity > 0 else 0.0
                history = [
                    p
                    for p in self._position_perf.get(position.symbol, [])
                    if p.day != today and p.day >= cutoff
                ]
                history.append(
                    PositionPerformanceDaily(
                        day=today, symbol=position.symbol, ret_d=pos_ret, contribution=weight * pos_ret
                    )
                )
                self._position_perf[position.symbol] = history

        logger.info(f"Performance rollup {today}: ret_d={ret_d:.4%} ret_cum={ret_cum:.4%}")
        return entry

    def sweep_retention(self) -> int:
        """Apply every retention window. Returns the number of records removed."""
        now = self._clock.now()
        cfg = self._settings
        removed = 0
        with self._lock:
            for (_, timeframe), series in self._candles.items():
                cutoff = now - timedelta(days=cfg.candle_retention_days(timeframe.value))
                removed += prune_before(series, cutoff, key=_ts)
            indicator_cutoff = now - timedelta(days=cfg.indicator_retention_days)
            for history in self._indicators.values():
                removed += prune_before(history, indicator_cutoff, key=_ts)
            removed += prune_before(
                self._oracle_signals, now - timedelta(days=cfg.oracle_retention_days), key=_ts
            )
            removed += prune_before(
                self._risk_history, now - timedelta(days=cfg.risk_retention_days), key=_ts
            )
            position_cutoff = now - timedelta(days=cfg.position_risk_retention_days)
            for history in self._position_risk.values():
                removed += prune_before(history, position_cutoff, key=_ts)

        if removed:
            logger.info(f"Retention sweep removed {removed} records")
        return removed

    # ── Reads ───────────────────────────────────────────────────────────────

    def get_ref_symbol(self, symbol: str) -> RefSymbol | None:
        return self._ref_symbols.get(symbol.upper())

    def get_ref_symbols(self) -> list[RefSymbol]:
        with self._lock:
            return list(self._ref_symbols.values())

    def get_candles(self, symbol: str, timeframe: Timeframe | str, limit: int = 100) -> list[Candle]:
        """Most recent ``limit`` candles, oldest first."""
        timeframe = _timeframe_or_none(timeframe)
        if timeframe is None:
            return []
        key = (symbol.upper(), timeframe)
        with self._lock:
            series = self._candles.get(key, [])
            return series[-limit:] if limit > 0 else []

    def get_latest_candle(self, symbol: str) -> Candle | None:
        """Newest candle for ``symbol`` across all timeframes."""
        symbol = symbol.upper()
        with self._lock:
            latest = [
                series[-1]
                for (sym, _), series in self._candles.items()
                if sym == symbol and series
            ]
        return max(latest, key=_ts) if latest else None

    def get_indicators(
        self, symbol: str, timeframe: Timeframe | str, limit: int = 30
    ) -> list[IndicatorSnapshot]:
        timeframe = _timeframe_or_none(timeframe)
        if timeframe is None:
            return []
        key = (symbol.upper(), timeframe)
        with self._lock:
            history = self._indicators.get(key, [])
            return history[-limit:] if limit > 0 else []

    def get_latest_indicator(self, symbol: str, timeframe: Timeframe | str) -> IndicatorSnapshot | None:
        history = self.get_indicators(symbol, timeframe, limit=1)
        return history[-1] if history else None

    def get_portfolio_state(self) -> PortfolioState:
        return self._portfolio

    def get_portfolio_snapshot(self) -> PortfolioSnapshot | None:
        return self._portfolio.snapshot

    def get_positions(self) -> list[Position]:
        return list(self._portfolio.positions.values())

    def get_position(self, symbol: str) -> Position | None:
        return self._portfolio.positions.get(symbol.upper())

    def get_latest_risk_snapshot(self) -> PortfolioRiskSnapshot | None:
        with self._lock:
            return self._risk_history[-1] if self._risk_history else None

    def get_risk_history(self, limit: int = 100) -> list[PortfolioRiskSnapshot]:
        with self._lock:
            return self._risk_history[-limit:] if limit > 0 else []

    def get_position_risk(self, symbol: str) -> PositionRisk | None:
        with self._lock:
            history = self._position_risk.get(symbol.upper())
            return history[-1] if history else None

    def get_oracle_signals(self, limit: int = 50) -> list[OracleSignal]:
        """Newest first."""
        with self._lock:
            return list(reversed(self._oracle_signals))[:limit]

    def get_oracle_signals_for_symbol(self, symbol: str, limit: int = 10) -> list[OracleSignal]:
        """Newest first."""
        symbol = symbol.upper()
        with self._lock:
            matching = [s for s in reversed(self._oracle_signals) if s.symbol == symbol]
        return matching[:limit]

    def get_macro_events(self, limit: int = 20) -> list[MacroEvent]:
        """Newest first."""
        with self._lock:
            return list(reversed(self._macro_events))[:limit]

    def get_geo_events(self, limit: int = 20) -> list[GeoEvent]:
        """Newest first."""
        with self._lock:
            return list(reversed(self._geo_events))[:limit]

    def get_performance_daily(self, days: int = 30) -> list[PerformanceDaily]:
        with self._lock:
            return self._perf_daily[-days:] if days > 0 else []

    def get_position_performance(self, symbol: str, days: int = 30) -> list[PositionPerformanceDaily]:
        with self._lock:
            history = self._position_perf.get(symbol.upper(), [])
            return history[-days:] if days > 0 else []

    @property
    def rejected_records(self) -> int:
        return self._rejected_records

    def get_health(self) -> dict[str, Any]:
        """Freshness-based health: healthy, degraded or unhealthy, plus metrics."""
        # age counts from when the snapshot reached the store, not its own ts
        received_at = self._portfolio.received_at
        if received_at is None:
            age_minutes = NO_PORTFOLIO_AGE_MINUTES
        else:
            age_minutes = (self._clock.now() - received_at).total_seconds() / 60

        with self._lock:
            symbol_count = len(self._ref_symbols)
            signal_count = len(self._oracle_signals)
            candle_series = len(self._candles)
            indicator_series = len(self._indicators)

        cfg = self._settings
        if age_minutes > cfg.health_unhealthy_age_minutes or symbol_count == 0:
            status = "unhealthy"
        elif age_minutes > cfg.health_degraded_age_minutes or signal_count == 0:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "metrics": {
                "symbols": symbol_count,
                "candle_series": candle_series,
                "indicator_series": indicator_series,
                "oracle_signals": signal_count,
                "positions": len(self._portfolio.positions),
                "portfolio_age_minutes": round(age_minutes, 2),
                "rejected_records": self._rejected_records,
            },
        }

    # ── Internals ───────────────────────────────────────────────────────────

    def _parse(self, model: Any, value: Any, kind: str) -> Any:
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except ValidationError as e:
            self._reject(kind, e)
            return None

    def _reject(self, kind: str, error: Exception) -> None:
        self._rejected_records += 1
        logger.warning(f"Rejected malformed {kind} record: {error}")

    def _notify(self, event_type: EventType, payload: Any) -> None:
        # Subscriber failures must not undo or fail the mutation that triggered them.
        try:
            self._bus.emit(event_type, payload)
        except Exception as e:
            log_exception(logger, e, {"event_type": event_type.value})


def _ts(item: Any) -> datetime:
    return item.ts


def _timeframe_or_none(value: Timeframe | str) -> Timeframe | None:
    try:
        return Timeframe(value)
    except ValueError:
        return None
