"""Trade validator: rule-based risk checks with per-user adaptation and outcome learning."""

from collections import deque
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from stagalgo.analytics.indicators import annualized_volatility
from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.bus import EventBus
from stagalgo.core.event_payloads import RuleUpdatedPayload, ValidationViolationPayload
from stagalgo.core.types import Event, EventType, Timeframe
from stagalgo.logging import get_logger, log_exception
from stagalgo.store.market_store import MarketStore
from stagalgo.validation.adaptation import UserAdaptationStore, compute_adaptation
from stagalgo.validation.ledger import TradeLedger
from stagalgo.validation.rules import (
    BLOCKING_SEVERITIES,
    DEFAULT_CHECKS,
    RuleCheck,
    ValidationContext,
    ValidationRule,
    ValidationSnapshot,
    Violation,
    default_rules,
)

logger = get_logger(__name__)

HISTORY_CAP = 100
TRADE_VIOLATIONS_CAP = 1000
VOLATILITY_LOOKBACK_DAYS = 30

_UPDATABLE_FIELDS = frozenset({"name", "severity", "enabled", "parameters", "adaptive_threshold"})


class ValidationResult(BaseModel):
    passed: bool = True
    violations: list[Violation] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    adapted_rules: list[str] = Field(default_factory=list)


class TradeValidator:
    """Evaluates proposed trades against the rule table.

    Decisions depend only on the rule set, the user's adaptation and the
    context/store state at call time. Violation counters and effectiveness
    scores are bookkeeping and never feed back into a decision.
    """

    def __init__(
        self,
        bus: EventBus,
        store: MarketStore,
        adaptations: UserAdaptationStore | None = None,
        ledger: TradeLedger | None = None,
        config: StagAlgoSettings | None = None,
    ) -> None:
        self._bus = bus
        self._store = store
        self._clock = store.clock
        self._settings = config or settings
        self._adaptations = adaptations or UserAdaptationStore()
        self._ledger = ledger or TradeLedger()

        self._rules: dict[str, ValidationRule] = {}
        self._checks: dict[str, RuleCheck] = {}
        for rule in default_rules():
            self._rules[rule.id] = rule
            self._checks[rule.id] = DEFAULT_CHECKS[rule.id]

        self._history: dict[str, deque[dict[str, Any]]] = {}
        # trade_id -> (user_id, violated rule ids); consumed on trade.closed
        self._trade_violations: dict[str, tuple[str, tuple[str, ...]]] = {}
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def adaptations(self) -> UserAdaptationStore:
        return self._adaptations

    @property
    def ledger(self) -> TradeLedger:
        return self._ledger

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def init(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(EventType.TRADE_EXECUTED, self._on_trade_executed),
            self._bus.subscribe(EventType.TRADE_CLOSED, self._on_trade_closed),
            self._bus.subscribe(EventType.USER_LEVEL_PROGRESSION, self._on_level_progression),
        ]
        logger.info(f"Trade validator initialized with {len(self._rules)} rules")

    def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ── Validation ──────────────────────────────────────────────────────────

    def validate_trade(self, context: ValidationContext) -> ValidationResult:
        """Run every enabled rule against ``context``.

        ``critical``/``error`` violations fail the trade; ``warning``
        violations only add their message to ``warnings``.
        """
        snapshot = self._build_snapshot(context)
        adapted = self._refresh_adaptations(context)
        result = ValidationResult(adapted_rules=adapted)

        for rule in self._rules.values():
            if not rule.enabled:
                continue
            params = self._adaptations.effective_parameters(rule, context.user_id)
            violation = self._run_check(rule, params, context, snapshot)
            if violation is None:
                continue
            result.violations.append(violation)
            if violation.severity in BLOCKING_SEVERITIES:
                result.passed = False
            else:
                result.warnings.append(violation.message)
            self._record_violation(rule, violation, context)

        if context.trade_id and result.violations:
            self._trade_violations[context.trade_id] = (
                context.user_id,
                tuple(v.rule_id for v in result.violations),
            )
            while len(self._trade_violations) > TRADE_VIOLATIONS_CAP:
                self._trade_violations.pop(next(iter(self._trade_violations)))

        logger.info(
            f"Trade validation {context.side} {context.quantity} {context.symbol} "
            f"for {context.user_id}: passed={result.passed}, "
            f"violations={len(result.violations)}, warnings={len(result.warnings)}"
        )
        return result

    def _run_check(
        self,
        rule: ValidationRule,
        params: dict[str, float],
        context: ValidationContext,
        snapshot: ValidationSnapshot,
    ) -> Violation | None:
        """Evaluate one rule; a check that raises is reported at the rule's severity."""
        try:
            return self._checks[rule.id](rule, params, context, snapshot)
        except Exception as e:
            log_exception(logger, e, {"rule_id": rule.id, "symbol": context.symbol})
            return Violation(
                rule_id=rule.id,
                severity=rule.severity,
                message=f"{rule.name} could not be evaluated: {e!r}",
                suggested_action=f"Review the parameters of rule {rule.id}",
                block_trade=rule.severity in BLOCKING_SEVERITIES,
            )

    def _build_snapshot(self, context: ValidationContext) -> ValidationSnapshot:
        now = self._clock.now()
        reference = self._store.reference
        portfolio = self._store.get_portfolio_snapshot()
        equity = portfolio.equity if portfolio and portfolio.equity > 0 else self._settings.default_equity

        exposure: dict[str, float] = {}
        for position in self._store.get_positions():
            sector = self._sector_of(position.symbol)
            exposure[sector] = exposure.get(sector, 0.0) + abs(position.market_value) / equity

        daily = self._store.get_candles(context.symbol, Timeframe.D1, limit=VOLATILITY_LOOKBACK_DAYS + 1)
        user = context.user_id
        return ValidationSnapshot(
            now=now,
            equity=equity,
            symbol_sector=self._sector_of(context.symbol),
            symbol_beta=reference.beta(context.symbol),
            historical_volatility=annualized_volatility([c.close for c in daily]),
            sector_exposure=exposure,
            trades_today=self._ledger.trades_today(user, now),
            trades_last_hour=self._ledger.trades_last_hour(user, now),
            realized_pnl_today=self._ledger.realized_pnl_today(user, now),
            last_loss_at=self._ledger.last_loss_at(user, now),
            consecutive_trades=self._ledger.consecutive_trades(user, now),
        )

    def _sector_of(self, symbol: str) -> str:
        ref = self._store.get_ref_symbol(symbol)
        if ref is not None and ref.sector:
            return ref.sector
        return self._store.reference.sector(symbol)

    def _refresh_adaptations(self, context: ValidationContext) -> list[str]:
        """Recompute profile-driven overrides; return ids of rules the user has overrides for.

        Without a stored profile the existing overrides are used as they are.
        """
        profile = self._adaptations.get_profile(context.user_id)
        if profile is not None:
            level = context.user_level or profile.level
            for rule in self._rules.values():
                overrides = compute_adaptation(rule, profile, level)
                if overrides:
                    self._adaptations.set(context.user_id, rule.id, overrides)
                else:
                    self._adaptations.discard(context.user_id, rule.id)
        return [
            rule.id
            for rule in self._rules.values()
            if rule.enabled and self._adaptations.get(context.user_id, rule.id)
        ]

    def _record_violation(
        self, rule: ValidationRule, violation: Violation, context: ValidationContext
    ) -> None:
        now = self._clock.now()
        rule.violation_count += 1
        rule.last_violation = now

        history = self._history.setdefault(context.user_id, deque(maxlen=HISTORY_CAP))
        history.append(
            {
                "ts": now,
                "rule_id": rule.id,
                "symbol": context.symbol,
                "quantity": context.quantity,
                "price": context.price,
                "trade_id": context.trade_id,
            }
        )

        try:
            self._bus.emit(
                EventType.VALIDATION_VIOLATION,
                ValidationViolationPayload(
                    user_id=context.user_id,
                    symbol=context.symbol,
                    violation=violation,
                    trade_id=context.trade_id,
                ),
            )
        except Exception as e:
            log_exception(logger, e, {"rule_id": rule.id, "user_id": context.user_id})

    # ── Learning ────────────────────────────────────────────────────────────

    def learn_from_outcome(self, trade_id: str, realized_pnl: float) -> list[str]:
        """Move the effectiveness of every rule the trade violated.

        A profitable trade pulls effectiveness toward 0.1, a loss toward 1.0.

        Returns:
            Ids of the rules that were adjusted.
        """
        entry = self._trade_violations.pop(trade_id, None)
        if entry is None:
            return []
        rate = self._settings.validator_learning_rate
        target = 0.1 if realized_pnl > 0 else 1.0
        adjusted = []
        for rule_id in entry[1]:
            rule = self._rules.get(rule_id)
            if rule is None:
                continue
            rule.effectiveness = rule.effectiveness + rate * (target - rule.effectiveness)
            adjusted.append(rule_id)
        if adjusted:
            logger.debug(f"Trade {trade_id} outcome {realized_pnl:+.2f} adjusted rules {adjusted}")
        return adjusted

    def _on_trade_executed(self, event: Event) -> None:
        payload = event.payload
        self._ledger.record_trade(payload.user_id, self._clock.now())

    def _on_trade_closed(self, event: Event) -> None:
        payload = event.payload
        self._ledger.record_close(payload.user_id, self._clock.now(), payload.realized_pnl)
        self.learn_from_outcome(payload.trade_id, payload.realized_pnl)

    def _on_level_progression(self, event: Event) -> None:
        payload = event.payload
        try:
            profile = self._adaptations.set_level(payload.user_id, payload.new_level)
        except ValueError as e:
            logger.warning(f"Ignoring level progression for {payload.user_id}: {e}")
            return
        logger.info(f"User {profile.user_id} progressed to {profile.level}")

    # ── Rule management ─────────────────────────────────────────────────────

    def get_rule(self, rule_id: str) -> ValidationRule | None:
        return self._rules.get(rule_id)

    def get_rules(self) -> list[ValidationRule]:
        return list(self._rules.values())

    def update_rule(self, rule_id: str, **updates: Any) -> ValidationRule | None:
        """Apply updates to a rule and announce them on ``validation.rule_updated``.

        Raises:
            ValueError: If an update names a field that cannot be changed.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            return None
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update rule fields: {sorted(unknown)}")
        if "parameters" in updates:
            updates = {**updates, "parameters": {**rule.parameters, **updates["parameters"]}}
        updated = ValidationRule.model_validate({**rule.model_dump(), **updates})
        self._rules[rule_id] = updated
        logger.info(f"Rule {rule_id} updated: {sorted(updates)}")
        self._bus.emit(EventType.RULE_UPDATED, RuleUpdatedPayload(rule=updated))
        return updated

    def register_rule(self, rule: ValidationRule, check: RuleCheck) -> None:
        """Add or replace a rule together with its predicate."""
        self._rules[rule.id] = rule
        self._checks[rule.id] = check
        logger.info(f"Rule {rule.id} registered")

    def get_rule_effectiveness(self) -> dict[str, float]:
        return {rule_id: rule.effectiveness for rule_id, rule in self._rules.items()}

    def get_user_validation_history(self, user_id: str) -> list[dict[str, Any]]:
        return list(self._history.get(user_id, ()))

    def pending_violations(self, trade_id: str) -> tuple[str, ...]:
        """Rule ids recorded against ``trade_id`` and not yet learned from."""
        entry = self._trade_violations.get(trade_id)
        return entry[1] if entry else ()
