"""Overseer - position-level risk governor.

Reviews every trade approved upstream and returns exactly one decision:

- ``hard_pull``: collapse signal says exit, or a critical oracle signal for
  the symbol arrived within the last 15 minutes.
- ``soft_pull``: collapse signal says reduce (quantity x0.5), spread above
  5%, volume below 30% of average (quantity x0.7), volatility above 50%
  (stop loss tightened to 2% from price) or more than 3 approved trades in
  the trailing hour. Modifications compound in that order.
- ``approve``: none of the above.

Evaluation fails closed: any exception becomes a ``hard_pull``. A separate
scan every 15 seconds raises alerts for open positions but never closes them.
"""

import math
import time
from collections import Counter, defaultdict, deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from stagalgo.analytics.indicators import annualized_volatility
from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.bus import EventBus
from stagalgo.core.clock import CancelToken, Scheduler
from stagalgo.core.event_payloads import (
    CollapseSignalPayload,
    GovernanceDecisionPayload,
    RiskAlertPayload,
    TradeFinalApprovalPayload,
    TradePositionBlockedPayload,
    TradePositionModifiedPayload,
)
from stagalgo.core.types import Event, EventType, OracleSignal, Severity, Timeframe
from stagalgo.governance.collapse import score_signal
from stagalgo.governance.models import (
    CollapseSignal,
    GovernanceDecision,
    OverseerContext,
    RiskAlert,
    TradeIntent,
    TradeModification,
)
from stagalgo.ingest.repository import CleanedQuote
from stagalgo.logging import get_logger, log_exception
from stagalgo.store.market_store import MarketStore

logger = get_logger(__name__)

COLLAPSE_REDUCE_FACTOR = 0.5
LOW_VOLUME_FACTOR = 0.7
VOLATILE_STOP_PCT = 0.02
RECENT_SIGNAL_LIMIT = 5
VOLATILITY_LOOKBACK_DAYS = 30
APPROVED_TRADES_CAP = 100


class Overseer:
    """Position-level governor between trade approval and execution."""

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

        self._active = True
        self._contexts: dict[str, OverseerContext] = {}
        self._collapse_signals: dict[str, CollapseSignal] = {}
        self._quotes: dict[str, CleanedQuote] = {}
        self._approved_trades: dict[str, deque[datetime]] = defaultdict(
            lambda: deque(maxlen=APPROVED_TRADES_CAP)
        )
        self._decision_counts: Counter[str] = Counter()
        self._intervention_count = 0
        self._last_scan: datetime | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._tokens: list[CancelToken] = []

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def init(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(EventType.TRADE_APPROVED, self._on_trade_approved),
            self._bus.subscribe(EventType.ORACLE_SIGNAL_ADDED, self._on_oracle_signal_added),
            self._bus.subscribe(EventType.MARKET_DATA_CLEANED, self._on_market_data_cleaned),
        ]
        self._tokens = [
            self._scheduler.schedule(
                timedelta(seconds=self._settings.overseer_scan_interval_seconds),
                self.scan_positions,
                name="overseer.scan",
            )
        ]
        logger.info("Overseer position governor initialized")

    def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        for token in self._tokens:
            token.cancel()
        self._unsubscribers.clear()
        self._tokens.clear()

    def activate(self) -> None:
        self._active = True
        logger.info("Overseer activated")

    def deactivate(self) -> None:
        self._active = False
        logger.warning("Overseer deactivated - position monitoring disabled")

    @property
    def active(self) -> bool:
        return self._active

    # ── Trade evaluation ────────────────────────────────────────────────────

    def evaluate_trade(self, trade: TradeIntent) -> GovernanceDecision:
        """Decide on ``trade``. Never raises; errors produce a ``hard_pull``."""
        started = time.perf_counter()
        try:
            context = self.build_context(trade.symbol)
            decision = self._decide(trade, context)
        except Exception as e:
            log_exception(logger, e, {"symbol": trade.symbol, "trade_id": trade.id})
            decision = GovernanceDecision(
                trade_id=trade.id,
                action="hard_pull",
                reasoning=f"System error during position evaluation: {e}",
                reasons=[f"System error during position evaluation: {e}"],
                risk_factors=["system_error"],
                confidence=1.0,
                created_at=self._clock.now(),
            )
        decision.processing_ms = (time.perf_counter() - started) * 1000
        self._decision_counts[decision.action] += 1
        return decision

    def _decide(self, trade: TradeIntent, context: OverseerContext) -> GovernanceDecision:
        cfg = self._settings
        now = self._clock.now()
        collapse = self._collapse_signals.get(trade.symbol)
        reasons: list[str] = []
        risk_factors: list[str] = []

        if collapse is not None and collapse.recommendation == "exit_immediately":
            reasons.append(f"Collapse detected - score: {collapse.score:.2f}")
            risk_factors.append("collapse_imminent")
            return self._decision(trade, context, "hard_pull", reasons, risk_factors, [])

        window = timedelta(minutes=cfg.critical_signal_window_minutes)
        critical = [
            s for s in context.oracle_signals
            if s.severity == Severity.CRITICAL and now - s.ts < window
        ]
        if critical:
            reasons.append(f"Critical oracle signals detected for {trade.symbol}")
            risk_factors.append("oracle_critical_position")
            return self._decision(trade, context, "hard_pull", reasons, risk_factors, [])

        modifications: list[TradeModification] = []
        quantity = trade.quantity

        if collapse is not None and collapse.recommendation == "reduce_exposure":
            reasons.append("Collapse risk detected - reducing position size")
            risk_factors.append("collapse_risk")
            new_quantity = _scaled_quantity(quantity, COLLAPSE_REDUCE_FACTOR)
            modifications.append(
                TradeModification(field="quantity", original_value=quantity,
                                  new_value=new_quantity, reason="Reduced due to collapse risk")
            )
            quantity = new_quantity

        if context.spread_pct is not None and context.spread_pct > cfg.max_spread_pct:
            reasons.append(f"Wide bid-ask spread: {context.spread_pct:.2%}")
            risk_factors.append("wide_spreads")

        volume_ratio = context.volume_ratio
        if volume_ratio is not None and volume_ratio < cfg.min_volume_ratio:
            reasons.append(f"Low volume: {volume_ratio:.1%} of average")
            risk_factors.append("low_liquidity")
            new_quantity = _scaled_quantity(quantity, LOW_VOLUME_FACTOR)
            modifications.append(
                TradeModification(field="quantity", original_value=quantity,
                                  new_value=new_quantity, reason="Reduced due to low liquidity")
            )
            quantity = new_quantity

        if context.volatility is not None and context.volatility > cfg.max_volatility:
            reasons.append(f"High volatility: {context.volatility:.1%}")
            risk_factors.append("high_volatility")
            if trade.stop_loss is not None:
                offset = 1 - VOLATILE_STOP_PCT if trade.side == "buy" else 1 + VOLATILE_STOP_PCT
                modifications.append(
                    TradeModification(field="stop_loss", original_value=trade.stop_loss,
                                      new_value=trade.price * offset,
                                      reason="Tightened due to high volatility")
                )

        recent = [ts for ts in context.recent_trades if now - ts < timedelta(hours=1)]
        if len(recent) > cfg.max_trades_per_hour:
            reasons.append(f"Excessive recent trading: {len(recent)} trades in last hour")
            risk_factors.append("overtrading")

        action = "soft_pull" if reasons else "approve"
        return self._decision(trade, context, action, reasons, risk_factors, modifications)

    def _decision(
        self,
        trade: TradeIntent,
        context: OverseerContext,
        action: str,
        reasons: list[str],
        risk_factors: list[str],
        modifications: list[TradeModification],
    ) -> GovernanceDecision:
        return GovernanceDecision(
            trade_id=trade.id,
            action=action,
            reasoning="; ".join(reasons) if reasons else "Position-level checks passed",
            reasons=reasons,
            risk_factors=risk_factors,
            modifications=modifications,
            confidence=_confidence(risk_factors, context),
            created_at=self._clock.now(),
        )

    def handle_approved_trade(self, trade: TradeIntent) -> GovernanceDecision:
        """Evaluate ``trade`` and publish the decision and its outcome topic."""
        decision = self.evaluate_trade(trade)
        self._intervention_count += 1
        self._publish(EventType.GOVERNANCE_DECISION, GovernanceDecisionPayload(trade=trade, decision=decision))

        if decision.action == "hard_pull":
            logger.warning(f"Overseer blocked {trade.symbol} trade: {decision.reasoning}")
            alert = RiskAlert(
                alert_type="hard_pull",
                severity=Severity.CRITICAL,
                title="Position Trade Blocked",
                message=f"{trade.symbol} position trade blocked: {decision.reasoning}",
                symbol=trade.symbol,
                recommended_action="Review position-specific risk factors",
                created_at=self._clock.now(),
            )
            self._publish(
                EventType.TRADE_POSITION_BLOCKED,
                TradePositionBlockedPayload(trade=trade, decision=decision, alert=alert),
            )
        elif decision.action == "soft_pull":
            logger.warning(
                f"Overseer modified {trade.symbol} trade: {decision.reasoning} "
                f"({len(decision.modifications)} modifications)"
            )
            modified = decision.apply(trade)
            alert = RiskAlert(
                alert_type="soft_pull",
                severity=Severity.MEDIUM,
                title="Position Trade Modified",
                message=f"{trade.symbol} trade modified: {decision.reasoning}",
                symbol=trade.symbol,
                recommended_action="Monitor position execution closely",
                created_at=self._clock.now(),
            )
            self._approved_trades[trade.symbol].append(self._clock.now())
            self._publish(
                EventType.TRADE_POSITION_MODIFIED,
                TradePositionModifiedPayload(
                    original=trade, modified=modified, decision=decision, alert=alert
                ),
            )
        else:
            self._approved_trades[trade.symbol].append(self._clock.now())
            self._publish(
                EventType.TRADE_FINAL_APPROVAL,
                TradeFinalApprovalPayload(trade=trade, decision=decision),
            )
        return decision

    # ── Context ─────────────────────────────────────────────────────────────

    def build_context(self, symbol: str) -> OverseerContext:
        """Assemble the per-symbol inputs from the store and the latest cleaned quote."""
        symbol = symbol.upper()
        reference = self._store.reference
        quote = self._quotes.get(symbol)
        daily = self._store.get_candles(symbol, Timeframe.D1, limit=VOLATILITY_LOOKBACK_DAYS + 1)

        spread_pct: float | None = None
        if quote is not None and quote.spread > 0:
            spread_pct = quote.spread_pct
        else:
            latest = self._store.get_latest_candle(symbol)
            if latest is not None and latest.close > 0:
                spread_pct = reference.spread(symbol) / latest.close

        current_volume: float | None = daily[-1].volume if daily else None
        if current_volume is None and quote is not None and quote.volume > 0:
            current_volume = float(quote.volume)

        context = OverseerContext(
            symbol=symbol,
            spread_pct=spread_pct,
            current_volume=current_volume,
            average_daily_volume=reference.average_daily_volume(symbol),
            volatility=annualized_volatility([c.close for c in daily]),
            recent_trades=list(self._approved_trades.get(symbol, ())),
            oracle_signals=self._store.get_oracle_signals_for_symbol(symbol, RECENT_SIGNAL_LIMIT),
            position=self._store.get_position(symbol),
            updated_at=self._clock.now(),
        )
        self._contexts[symbol] = context
        return context

    def get_context(self, symbol: str) -> OverseerContext | None:
        return self._contexts.get(symbol.upper())

    # ── Collapse signals ────────────────────────────────────────────────────

    def update_collapse_signal(self, signal: OracleSignal) -> CollapseSignal:
        """Rescore ``signal.symbol`` from ``signal``; overwrites the previous score."""
        cfg = self._settings
        collapse = score_signal(
            signal,
            self._clock.now(),
            cfg.collapse_exit_threshold,
            cfg.collapse_reduce_threshold,
            cfg.collapse_monitor_threshold,
        )
        self._collapse_signals[collapse.symbol] = collapse
        logger.debug(
            f"Collapse signal for {collapse.symbol}: score={collapse.score:.2f} "
            f"recommendation={collapse.recommendation}"
        )
        if collapse.score > cfg.collapse_reduce_threshold:
            self._publish(EventType.COLLAPSE_SIGNAL, CollapseSignalPayload(signal=collapse))
        return collapse

    def get_collapse_signal(self, symbol: str) -> CollapseSignal | None:
        return self._collapse_signals.get(symbol.upper())

    def get_collapse_signals(self) -> list[CollapseSignal]:
        return list(self._collapse_signals.values())

    # ── Position scan ───────────────────────────────────────────────────────

    def scan_positions(self) -> list[RiskAlert]:
        """Alert on open positions with exit-level collapse risk or large losses."""
        if not self._active:
            return []
        cfg = self._settings
        now = self._clock.now()
        alerts: list[RiskAlert] = []
        for position in self._store.get_positions():
            collapse = self._collapse_signals.get(position.symbol)
            if collapse is not None and collapse.recommendation == "exit_immediately":
                alerts.append(
                    RiskAlert(
                        alert_type="threshold_breach",
                        severity=Severity.CRITICAL,
                        title="Position Collapse Risk",
                        message=f"{position.symbol} showing collapse signals - consider immediate exit",
                        symbol=position.symbol,
                        current_value=collapse.score,
                        threshold_value=cfg.collapse_exit_threshold,
                        recommended_action="Exit position immediately",
                        created_at=now,
                    )
                )
            loss_pct = position.unrealized_pnl_pct
            if loss_pct < -cfg.loss_alert_pct:
                alerts.append(
                    RiskAlert(
                        alert_type="threshold_breach",
                        severity=Severity.HIGH,
                        title="Large Position Loss",
                        message=f"{position.symbol} down {abs(loss_pct):.1f}%",
                        symbol=position.symbol,
                        current_value=abs(loss_pct),
                        threshold_value=cfg.loss_alert_pct,
                        recommended_action="Review position and consider stop loss",
                        created_at=now,
                    )
                )

        for alert in alerts:
            logger.warning(f"Risk alert: {alert.title} ({alert.symbol})")
            self._publish(EventType.RISK_ALERT, RiskAlertPayload(alert=alert))
        self._last_scan = now
        return alerts

    # ── Metrics ─────────────────────────────────────────────────────────────

    def get_metrics(self) -> dict[str, Any]:
        return {
            "intervention_count": self._intervention_count,
            "last_scan": self._last_scan.isoformat() if self._last_scan else None,
            "active": self._active,
            "tracked_contexts": len(self._contexts),
            "collapse_signals": len(self._collapse_signals),
            "decisions": dict(self._decision_counts),
        }

    # ── Bus handlers ────────────────────────────────────────────────────────

    def _on_trade_approved(self, event: Event) -> None:
        self.handle_approved_trade(event.payload.trade)

    def _on_oracle_signal_added(self, event: Event) -> None:
        try:
            self.update_collapse_signal(event.payload.signal)
        except Exception as e:
            log_exception(logger, e, {"symbol": event.payload.signal.symbol})

    def _on_market_data_cleaned(self, event: Event) -> None:
        quote = event.payload.quote
        self._quotes[quote.symbol] = quote

    def _publish(self, event_type: EventType, payload: Any) -> None:
        try:
            self._bus.emit(event_type, payload)
        except Exception as e:
            log_exception(logger, e, {"event_type": event_type.value})


def _scaled_quantity(quantity: float, factor: float) -> float:
    """Whole-share quantity scaled down, never below one share."""
    return float(max(1, math.floor(quantity * factor)))


def _confidence(risk_factors: list[str], context: OverseerContext) -> float:
    confidence = 0.8 - 0.05 * len(risk_factors)
    if context.spread_pct is None and context.volume_ratio is None and context.volatility is None:
        # no market data for the symbol
        confidence *= 0.7
    return max(confidence, 0.3)
