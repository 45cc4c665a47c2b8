"""Tests for the market/portfolio store."""

import random
from datetime import timedelta

import pytest

from stagalgo.core.event_payloads import (
    CandleProcessedPayload,
    OracleSignalCreatedPayload,
    PortfolioProcessedPayload,
)
from stagalgo.core.types import Candle, EventType, PortfolioSnapshot, Position, Timeframe


def _portfolio(store, equity: float = 100_000.0, cash: float = 20_000.0, positions=None) -> None:
    payload = {"portfolio": {"equity": equity, "cash": cash, "ts": store.clock.now()}}
    if positions is not None:
        payload["positions"] = positions
    store.ingest_portfolio_update(payload)


# ---------------------------------------------------------------------------
# Candles
# ---------------------------------------------------------------------------


def test_candle_upserts_keep_series_ordered_and_unique(store, make_candles) -> None:
    candles = make_candles("AAPL", [100.0 + i for i in range(30)], timeframe=Timeframe.M5)
    shuffled = candles[:]
    random.Random(7).shuffle(shuffled)
    for candle in shuffled:
        store.ingest_candle(candle)
    # same timestamp again: last write wins
    store.ingest_candle(candles[10].model_copy(update={"close": 999.0}))

    series = store.get_candles("AAPL", Timeframe.M5, limit=100)
    timestamps = [c.ts for c in series]
    assert timestamps == sorted(set(timestamps))
    assert len(series) == 30
    assert series[10].close == 999.0


def test_get_candles_limit_and_unknown_timeframe(store, make_candles) -> None:
    for candle in make_candles("MSFT", [float(i + 1) for i in range(10)], timeframe=Timeframe.H1):
        store.ingest_candle(candle)
    assert [c.close for c in store.get_candles("msft", "1h", limit=3)] == [8.0, 9.0, 10.0]
    assert store.get_candles("MSFT", "4h") == []
    assert store.get_candles("NONE", Timeframe.H1) == []


def test_latest_candle_across_timeframes(store, make_candles, clock) -> None:
    for candle in make_candles("AAPL", [150.0, 151.0], timeframe=Timeframe.D1):
        store.ingest_candle(candle)
    clock.advance(timedelta(minutes=1))
    for candle in make_candles("AAPL", [152.5], timeframe=Timeframe.M1):
        store.ingest_candle(candle)
    assert store.get_latest_candle("AAPL").close == 152.5
    assert store.get_latest_candle("ZZZ") is None


def test_malformed_candle_is_counted_not_raised(store, recorder) -> None:
    stored = recorder(EventType.CANDLE_STORED)
    store.ingest_candle({"symbol": "AAPL", "tf": "1m", "ts": "not a date", "o": 1, "h": 1, "l": 1, "c": 1})
    store.ingest_candle({"symbol": "AAPL", "tf": "1m", "ts": "2024-06-03T14:00:00Z", "o": -1, "h": 1, "l": 1, "c": 1})
    assert store.rejected_records == 2
    assert stored == []


def test_candle_processed_topic_feeds_store(store, bus, make_candles, recorder) -> None:
    stored = recorder(EventType.CANDLE_STORED)
    [candle] = make_candles("TSLA", [250.0], timeframe=Timeframe.M1)
    bus.emit(EventType.CANDLE_PROCESSED, CandleProcessedPayload(candle=candle))
    assert store.get_latest_candle("TSLA") == candle
    assert [e.payload.symbol for e in stored] == ["TSLA"]


def test_retention_never_empties_a_series(store, clock, config) -> None:
    old = Candle(
        symbol="AAPL",
        timeframe=Timeframe.M1,
        ts=clock.now() - timedelta(days=config.retention_1m_days + 30),
        open=1,
        high=1,
        low=1,
        close=1,
    )
    store.ingest_candle(old)
    assert store.get_candles("AAPL", Timeframe.M1) == [old]

    clock.advance(timedelta(days=400))
    store.sweep_retention()
    assert store.get_candles("AAPL", Timeframe.M1) == [old]


def test_retention_sweep_drops_expired_candles(store, clock, make_candles, config) -> None:
    for candle in make_candles("AAPL", [1.0, 2.0, 3.0], timeframe=Timeframe.M1):
        store.ingest_candle(candle)
    clock.advance(timedelta(days=config.retention_1m_days + 1))
    [fresh] = make_candles("AAPL", [4.0], timeframe=Timeframe.M1)
    store.ingest_candle(fresh)
    store.sweep_retention()
    assert [c.close for c in store.get_candles("AAPL", Timeframe.M1)] == [4.0]


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


def test_ma20_equals_mean_of_last_twenty_closes(store, make_candles) -> None:
    closes = [170.0 if i % 2 == 0 else 180.0 for i in range(25)]
    closes[-1] = 173.5
    for candle in make_candles("AAPL", closes, timeframe=Timeframe.M1):
        store.ingest_candle(candle)

    assert store.recompute_indicators() == 1
    snapshot = store.get_latest_indicator("AAPL", Timeframe.M1)
    assert snapshot is not None
    assert snapshot.ma20 == pytest.approx(sum(closes[-20:]) / 20, abs=1e-9)


def test_indicator_job_runs_on_schedule(store, scheduler, clock, make_candles, recorder, config) -> None:
    updates = recorder(EventType.INDICATORS_UPDATED)
    for candle in make_candles("AAPL", [100.0 + i for i in range(25)], timeframe=Timeframe.M1):
        store.ingest_candle(candle)
    for candle in make_candles("MSFT", [100.0, 101.0], timeframe=Timeframe.M1):
        store.ingest_candle(candle)

    clock.advance(timedelta(seconds=config.indicator_interval_seconds))
    scheduler.run_pending()

    assert [e.payload.series_updated for e in updates] == [1]
    assert store.get_latest_indicator("MSFT", Timeframe.M1) is None


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


def test_empty_positions_array_clears_positions(store) -> None:
    _portfolio(store, positions=[{"symbol": "AAPL", "qty": 10, "avg_price": 150, "mv": 1600}])
    assert len(store.get_positions()) == 1

    _portfolio(store, positions=[])
    assert store.get_positions() == []
    assert store.get_position("AAPL") is None


def test_missing_positions_key_keeps_positions(store) -> None:
    _portfolio(store, positions=[{"symbol": "AAPL", "qty": 10, "avg_price": 150, "mv": 1600}])
    _portfolio(store, equity=101_000.0)
    assert store.get_portfolio_snapshot().equity == 101_000.0
    assert store.get_position("aapl").quantity == 10


def test_portfolio_update_is_atomic_on_bad_position(store) -> None:
    _portfolio(store, positions=[{"symbol": "AAPL", "qty": 10, "avg_price": 150}])
    _portfolio(store, equity=5.0, positions=[{"symbol": "MSFT"}])
    assert store.get_portfolio_snapshot().equity == 100_000.0
    assert [p.symbol for p in store.get_positions()] == ["AAPL"]
    assert store.rejected_records == 1


def test_portfolio_processed_topic(store, bus, clock, recorder) -> None:
    updates = recorder(EventType.PORTFOLIO_UPDATED)
    snapshot = PortfolioSnapshot(ts=clock.now(), equity=50_000.0, cash=10_000.0)
    position = Position(symbol="MSFT", quantity=5, avg_cost=300.0, market_value=1_600.0)
    bus.emit(EventType.PORTFOLIO_PROCESSED, PortfolioProcessedPayload(portfolio=snapshot, positions=(position,)))

    assert store.get_position("MSFT").updated_ts == clock.now()
    assert updates[0].payload.position_count == 1
    assert updates[0].payload.equity == 50_000.0


# ---------------------------------------------------------------------------
# Risk and performance
# ---------------------------------------------------------------------------


def test_risk_skipped_without_positions(store) -> None:
    assert store.recompute_risk() is None
    _portfolio(store, positions=[])
    assert store.recompute_risk() is None


def test_risk_snapshot_and_position_risk(store, recorder) -> None:
    events = recorder(EventType.RISK_METRICS_UPDATED)
    _portfolio(
        store,
        positions=[
            {"symbol": "AAPL", "qty": 100, "avg_price": 150, "mv": 40_000},
            {"symbol": "TSLA", "qty": 50, "avg_price": 200, "mv": 10_000},
        ],
    )
    snapshot = store.recompute_risk()

    assert snapshot.concentration_top == pytest.approx(40.0)
    assert snapshot.beta == pytest.approx(0.4 * 1.2 + 0.1 * 2.0)
    assert snapshot.position_count == 2
    assert 0.0 <= snapshot.risk_state <= 100.0
    assert events[0].payload.snapshot == snapshot
    assert store.get_latest_risk_snapshot() == snapshot
    assert store.get_position_risk("AAPL").stop_suggest == pytest.approx(142.5)


def test_performance_rollup_chains_daily_returns(store, clock) -> None:
    _portfolio(store, equity=100_000.0, positions=[{"symbol": "AAPL", "qty": 10, "avg_price": 100, "mv": 1_100, "unr_pnl": 100}])
    first = store.rollup_performance()
    assert first.ret_d == 0.0

    clock.advance(timedelta(days=1))
    _portfolio(store, equity=110_000.0)
    second = store.rollup_performance()
    assert second.ret_d == pytest.approx(0.10)
    assert second.ret_cum == pytest.approx(0.10)

    # same-day rerun replaces the entry
    _portfolio(store, equity=99_000.0)
    rerun = store.rollup_performance()
    assert rerun.ret_d == pytest.approx(-0.01)
    assert len(store.get_performance_daily()) == 2

    [today] = store.get_position_performance("AAPL", days=1)
    assert today.ret_d == pytest.approx(0.10)


def test_performance_requires_snapshot(store) -> None:
    assert store.rollup_performance() is None


# ---------------------------------------------------------------------------
# Signals, auxiliary feeds and health
# ---------------------------------------------------------------------------


def test_ref_symbols_carry_last_updated_time(store, clock) -> None:
    store.ingest_ref_symbol({"symbol": "xyz", "name": "XYZ Corp"})
    assert store.get_ref_symbol("XYZ").updated_ts == clock.now()

    earlier = clock.now() - timedelta(days=2)
    store.ingest_ref_symbol({"symbol": "ABC", "updated_at": earlier.isoformat()})
    assert store.get_ref_symbol("ABC").updated_ts == earlier


def test_candle_vwap_is_optional(store, clock) -> None:
    ts = clock.now().replace(minute=0)
    store.ingest_candle({"symbol": "AAPL", "tf": "1h", "ts": ts, "o": 1, "h": 2, "l": 1, "c": 2, "vwap": 1.5})
    store.ingest_candle({"symbol": "AAPL", "tf": "1h", "ts": ts + timedelta(hours=1),
                         "o": 2, "h": 3, "l": 2, "c": 3})
    assert [c.vwap for c in store.get_candles("AAPL", Timeframe.H1)] == [1.5, None]


def test_oracle_signals_newest_first_and_deduplicated(store, bus, clock, recorder) -> None:
    added = recorder(EventType.ORACLE_SIGNAL_ADDED)
    for i in range(3):
        store.ingest_oracle_signal(
            {"id": f"s{i}", "symbol": "AAPL", "type": "earnings", "strength": 0.5,
             "ts": clock.now() + timedelta(minutes=i)}
        )
    bus.emit(
        EventType.ORACLE_SIGNAL_CREATED,
        OracleSignalCreatedPayload(
            signal={"id": "s0", "symbol": "AAPL", "type": "earnings", "strength": 0.9,
                    "ts": clock.now() + timedelta(minutes=5)}
        ),
    )

    assert [s.id for s in store.get_oracle_signals_for_symbol("AAPL")] == ["s0", "s2", "s1"]
    assert store.get_oracle_signals(limit=1)[0].strength == 0.9
    assert len(added) == 4


def test_macro_events_are_capped(store, clock) -> None:
    for i in range(1001):
        store.ingest_macro_event(
            {"id": f"m{i}", "event_type": "cpi", "ts": clock.now() + timedelta(minutes=i)}
        )
    events = store.get_macro_events(limit=1000)
    assert len(events) == 500
    assert events[0].id == "m1000"


def test_health_reflects_freshness(store, clock, config) -> None:
    assert store.get_health()["status"] == "unhealthy"

    store.seed_reference_data()
    _portfolio(store, positions=[])
    health = store.get_health()
    assert health["status"] == "healthy"
    assert health["metrics"]["symbols"] > 0

    clock.advance(timedelta(minutes=config.health_degraded_age_minutes + 1))
    assert store.get_health()["status"] == "degraded"
    clock.advance(timedelta(minutes=config.health_unhealthy_age_minutes))
    assert store.get_health()["status"] == "unhealthy"


def test_health_age_counts_from_ingestion_not_snapshot_time(store, clock) -> None:
    store.seed_reference_data()
    old = PortfolioSnapshot(ts=clock.now() - timedelta(hours=3), equity=10_000.0, cash=10_000.0)
    store.apply_portfolio(old, [])

    health = store.get_health()
    assert health["status"] == "healthy"
    assert health["metrics"]["portfolio_age_minutes"] == 0


def test_shutdown_cancels_jobs_and_subscriptions(store, scheduler, bus) -> None:
    assert {job["name"] for job in scheduler.jobs()} == {
        "store.indicators",
        "store.risk",
        "store.retention",
        "store.performance",
    }
    store.shutdown()
    assert scheduler.jobs() == []
    assert bus.subscriber_count(EventType.CANDLE_PROCESSED) == 0
