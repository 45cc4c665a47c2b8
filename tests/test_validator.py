"""Tests for the trade validator, its ledger and per-user adaptation."""

import logging
from datetime import timedelta

import pytest

from stagalgo.core.event_payloads import (
    TradeClosedPayload,
    TradeExecutedPayload,
    UserLevelProgressionPayload,
)
from stagalgo.core.types import EventType, PortfolioSnapshot, Position
from stagalgo.store.market_store import MarketStore
from stagalgo.store.reference import ReferenceData
from stagalgo.validation import (
    TradeLedger,
    TradeValidator,
    UserProfile,
    ValidationContext,
    ValidationRule,
    Violation,
)


@pytest.fixture
def validator(bus, store, config):
    v = TradeValidator(bus, store, config=config)
    v.init()
    yield v
    v.shutdown()


def _ctx(**overrides) -> ValidationContext:
    data = {"user_id": "u1", "symbol": "ZZZ", "side": "buy", "quantity": 10, "price": 100.0}
    data.update(overrides)
    return ValidationContext(**data)


def _rule_ids(result) -> set[str]:
    return {v.rule_id for v in result.violations}


def _executed(bus, user_id: str = "u1", trade_id: str = "t") -> None:
    bus.emit(
        EventType.TRADE_EXECUTED,
        TradeExecutedPayload(trade_id=trade_id, user_id=user_id, symbol="ZZZ", side="buy",
                             quantity=1, price=100.0, order_id=f"o-{trade_id}"),
    )


def _closed(bus, pnl: float, user_id: str = "u1", trade_id: str = "t") -> None:
    bus.emit(
        EventType.TRADE_CLOSED,
        TradeClosedPayload(trade_id=trade_id, user_id=user_id, symbol="ZZZ", realized_pnl=pnl),
    )


# ---------------------------------------------------------------------------
# Core decisions
# ---------------------------------------------------------------------------


def test_small_trade_passes_cleanly(validator) -> None:
    result = validator.validate_trade(_ctx())
    assert result.passed is True
    assert result.violations == []
    assert result.warnings == []


def test_oversized_position_is_blocked(validator, recorder) -> None:
    violations = recorder(EventType.VALIDATION_VIOLATION)

    # $60k notional against the default $100k equity: 60% > 10%, and > $50k.
    result = validator.validate_trade(_ctx(quantity=600, price=100.0))

    assert result.passed is False
    [violation] = result.violations
    assert violation.rule_id == "position_size_limit"
    assert violation.block_trade is True
    assert "Reduce position size to 100 shares" == violation.suggested_action
    [event] = violations
    assert event.payload.violation == violation


def test_absolute_dollar_cap_applies_to_large_accounts(validator, store, clock) -> None:
    store.apply_portfolio(PortfolioSnapshot(ts=clock.now(), equity=1_000_000.0, cash=1_000_000.0), [])
    result = validator.validate_trade(_ctx(quantity=550, price=100.0))
    assert result.passed is False
    assert _rule_ids(result) == {"position_size_limit"}


def test_warnings_do_not_block(validator) -> None:
    result = validator.validate_trade(_ctx(price=3.0))
    assert result.passed is True
    assert _rule_ids(result) == {"penny_stock_filter"}
    assert result.warnings == [result.violations[0].message]


def test_sector_check_counts_existing_exposure_for_buys_only(validator, store, clock) -> None:
    position = Position(symbol="MSFT", quantity=100, avg_cost=250.0, market_value=25_000.0)
    store.apply_portfolio(PortfolioSnapshot(ts=clock.now(), equity=100_000.0, cash=75_000.0), [position])

    buy = validator.validate_trade(_ctx(symbol="AAPL", quantity=50, price=150.0))
    assert "sector_concentration" in _rule_ids(buy)
    assert buy.passed is True

    sell = validator.validate_trade(_ctx(symbol="AAPL", side="sell", quantity=50, price=150.0))
    assert "sector_concentration" not in _rule_ids(sell)


def test_high_beta_symbol_warns(bus, scheduler, config) -> None:
    store = MarketStore(bus, scheduler, reference_data=ReferenceData(betas={"RISKY": 2.5}), config=config)
    validator = TradeValidator(bus, store, config=config)
    result = validator.validate_trade(_ctx(symbol="RISKY"))
    assert _rule_ids(result) == {"volatility_filter"}


def test_disabled_rule_never_fires(validator, recorder) -> None:
    updates = recorder(EventType.RULE_UPDATED)

    validator.update_rule("position_size_limit", enabled=False)

    result = validator.validate_trade(_ctx(quantity=600, price=100.0))
    assert result.passed is True
    assert "position_size_limit" not in _rule_ids(result)
    assert updates[0].payload.rule.enabled is False


def test_update_rule_rejects_unknown_fields(validator) -> None:
    with pytest.raises(ValueError):
        validator.update_rule("position_size_limit", violation_count=0)
    assert validator.update_rule("no_such_rule", enabled=False) is None


def test_partial_parameter_update_keeps_other_parameters(validator) -> None:
    assert validator.validate_trade(_ctx(quantity=150, price=100.0)).passed is False

    updated = validator.update_rule("position_size_limit", parameters={"max_position_percent": 0.2})

    assert updated.parameters == {"max_position_percent": 0.2, "absolute_max_dollars": 50_000}
    assert validator.validate_trade(_ctx(quantity=150, price=100.0)).passed is True
    assert validator.validate_trade(_ctx(quantity=300, price=100.0)).passed is False


def test_failing_check_is_reported_as_violation(validator, caplog) -> None:
    rule = ValidationRule(id="broken", name="Broken", category="risk", severity="error",
                          parameters={"limit": 1.0})

    def check(rule, params, context, snapshot):
        return params["missing"]

    validator.register_rule(rule, check)
    with caplog.at_level(logging.ERROR):
        result = validator.validate_trade(_ctx())

    assert result.passed is False
    [violation] = result.violations
    assert violation.rule_id == "broken"
    assert violation.block_trade is True
    assert "could not be evaluated" in violation.message
    assert "rule_id" in caplog.text


def test_repeated_validation_is_deterministic(validator) -> None:
    context = _ctx(quantity=600, price=100.0)
    first = validator.validate_trade(context)
    second = validator.validate_trade(context)
    assert first == second
    assert validator.get_rule("position_size_limit").violation_count == 2
    assert len(validator.get_user_validation_history("u1")) == 2


def test_registered_rule_participates(validator) -> None:
    rule = ValidationRule(id="no_zzz", name="No ZZZ", category="compliance", severity="critical")

    def check(rule, params, context, snapshot):
        if context.symbol == "ZZZ":
            return Violation(rule_id=rule.id, severity=rule.severity, message="ZZZ is restricted",
                             suggested_action="Pick another symbol", block_trade=True)
        return None

    validator.register_rule(rule, check)
    assert validator.validate_trade(_ctx()).passed is False
    assert validator.validate_trade(_ctx(symbol="AAPL")).passed is True


# ---------------------------------------------------------------------------
# Adaptation
# ---------------------------------------------------------------------------


def test_expert_user_gets_wider_position_limit(validator) -> None:
    validator.adaptations.upsert_profile(UserProfile(user_id="pro", level="expert"))
    context = {"quantity": 120, "price": 100.0}

    expert = validator.validate_trade(_ctx(user_id="pro", **context))
    novice = validator.validate_trade(_ctx(user_id="new", **context))

    assert expert.passed is True
    assert expert.adapted_rules == ["position_size_limit"]
    assert novice.passed is False
    assert validator.get_rule("position_size_limit").parameters["max_position_percent"] == 0.10


def test_conservative_personality_takes_precedence(validator) -> None:
    validator.adaptations.upsert_profile(
        UserProfile(user_id="careful", level="expert", personality="conservative")
    )
    result = validator.validate_trade(_ctx(user_id="careful", quantity=80, price=100.0))
    assert result.passed is False


def test_context_level_overrides_profile_level(validator) -> None:
    validator.adaptations.upsert_profile(UserProfile(user_id="u1", level="beginner"))
    result = validator.validate_trade(_ctx(quantity=110, price=100.0, user_level="advanced"))
    assert result.passed is True


def test_level_progression_event_updates_profile(validator, bus, caplog) -> None:
    bus.emit(EventType.USER_LEVEL_PROGRESSION, UserLevelProgressionPayload(user_id="u1", new_level="expert"))
    assert validator.adaptations.get_profile("u1").level == "expert"

    with caplog.at_level(logging.WARNING, logger="stagalgo.validation.validator"):
        bus.emit(EventType.USER_LEVEL_PROGRESSION, UserLevelProgressionPayload(user_id="u1", new_level="guru"))
    assert validator.adaptations.get_profile("u1").level == "expert"
    assert "Ignoring level progression" in caplog.text


# ---------------------------------------------------------------------------
# Ledger-driven rules
# ---------------------------------------------------------------------------


def test_hourly_trade_limit_from_executions(validator, bus) -> None:
    for i in range(3):
        _executed(bus, trade_id=f"t{i}")
    result = validator.validate_trade(_ctx())
    assert "overtrading_prevention" in _rule_ids(result)
    assert "Hourly trade limit" in " ".join(result.warnings)


def test_cooldown_after_loss_expires(validator, bus, clock) -> None:
    _closed(bus, -100.0)
    assert "emotional_trading_filter" in _rule_ids(validator.validate_trade(_ctx()))

    clock.advance(timedelta(minutes=31))
    assert "emotional_trading_filter" not in _rule_ids(validator.validate_trade(_ctx()))


def test_daily_loss_limit_blocks(validator, bus) -> None:
    _closed(bus, -6_000.0)
    result = validator.validate_trade(_ctx())
    assert result.passed is False
    assert "daily_loss_limit" in _rule_ids(result)


def test_learning_moves_effectiveness_of_violated_rules(validator, bus, config) -> None:
    before = validator.get_rule_effectiveness()["position_size_limit"]
    validator.validate_trade(_ctx(quantity=600, price=100.0, trade_id="t-big"))
    assert validator.pending_violations("t-big") == ("position_size_limit",)

    _closed(bus, 250.0, trade_id="t-big")

    after = validator.get_rule_effectiveness()["position_size_limit"]
    assert after == pytest.approx(before + config.validator_learning_rate * (0.1 - before))
    assert validator.pending_violations("t-big") == ()
    assert validator.learn_from_outcome("t-big", 1.0) == []


def test_ledger_consecutive_runs(clock) -> None:
    ledger = TradeLedger()
    now = clock.now()
    for minutes in (120, 20, 10, 0):
        ledger.record_trade("u", now - timedelta(minutes=minutes))

    assert ledger.consecutive_trades("u", now) == 3
    assert ledger.consecutive_trades("u", now + timedelta(minutes=31)) == 0
    assert ledger.trades_last_hour("u", now) == 3
    assert ledger.trades_today("u", now) == 4

    ledger.clear("u")
    assert ledger.trades_today("u", now) == 0
