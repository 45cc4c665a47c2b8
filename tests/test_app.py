"""End-to-end tests for the composed trading core and the CLI."""

import json
import sys
from datetime import timedelta

import httpx
import pytest

from stagalgo import main as cli
from stagalgo.app import TradingCore
from stagalgo.config import StagAlgoSettings
from stagalgo.core.event_payloads import BrokerSnapshotPayload, FeedDataPayload
from stagalgo.core.types import EventType, Timeframe
from stagalgo.execution import ExecutionRequest
from stagalgo.validation import ValidationContext


class Backend:
    def __init__(self):
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.url.path.endswith("trade-execute"):
            return httpx.Response(200, json={"success": True, "order_id": "ord-9"})
        return httpx.Response(201)


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def core(clock, backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend), base_url="http://backend.test")
    trading_core = TradingCore(config=StagAlgoSettings(_env_file=None), clock=clock, http_client=client)
    trading_core.init()
    yield trading_core
    trading_core.shutdown()


@pytest.fixture
def bus(core):
    return core.bus


def _feed(clock, feed_id="f1", symbol="AAPL", price=190.0):
    now = clock.now().isoformat()
    return {"id": feed_id, "source": "polygon", "symbol": symbol, "timestamp": now, "data_type": "price",
            "raw_data": {"price": price, "bid": price - 0.01, "ask": price + 0.01, "volume": 10_000,
                         "change": 1.0, "change_percent": 0.5},
            "received_at": now}


def _snapshot(clock):
    return {"equity": 101_900.0, "cash": 100_000.0, "timestamp": clock.now().isoformat(),
            "positions": [{"symbol": "AAPL", "quantity": 10, "averagePrice": 180.0, "currentPrice": 190.0}]}


def test_init_seeds_reference_data_and_schedules_jobs(core) -> None:
    assert len(core.store.get_ref_symbols()) == 8
    assert len(core.store.get_oracle_signals()) == 3
    assert core.overseer.get_collapse_signal("AAPL").recommendation == "no_action"
    names = {job["name"] for job in core.scheduler.jobs()}
    assert {"store.indicators", "store.risk", "overseer.scan", "search.recommendations",
            "search.alerts", "repository.reset_metrics"} <= names


def test_feed_and_broker_data_flow_into_store(core, clock) -> None:
    assert core.health()["store"]["status"] == "unhealthy"

    core.bus.emit(EventType.FEED_DATA_RECEIVED, FeedDataPayload(feed=_feed(clock)))
    core.bus.emit(EventType.BROKER_SNAPSHOT_RECEIVED, BrokerSnapshotPayload(snapshot=_snapshot(clock)))

    assert core.store.get_candles("AAPL", Timeframe.M1)[-1].close == 190.0
    assert core.store.get_position("AAPL").market_value == pytest.approx(1_900.0)
    health = core.health()
    assert health["store"]["status"] == "healthy"
    assert health["ingestion"]["processed"] == 2
    assert health["persistence"] == {"pending": 3, "written": 0, "dropped": 0}


def test_scheduled_risk_job_publishes_metrics(core, clock, recorder) -> None:
    risk = recorder(EventType.RISK_METRICS_UPDATED)
    core.bus.emit(EventType.BROKER_SNAPSHOT_RECEIVED, BrokerSnapshotPayload(snapshot=_snapshot(clock)))

    clock.advance(timedelta(seconds=core.settings.risk_interval_seconds))
    core.scheduler.run_pending()

    assert len(risk) == 1
    assert core.persistence.pending("risk_portfolio") == 1


async def test_trade_submission_end_to_end(core, backend) -> None:
    context = ValidationContext(user_id="u1", symbol="AAPL", side="buy", quantity=10, price=190.0)
    request = ExecutionRequest(symbol="AAPL", side="buy", quantity=10, price=190.0)

    outcome = await core.gate.submit(context, request)

    assert outcome.executed is True
    assert outcome.result.order_id == "ord-9"
    assert core.persistence.pending("governance_decisions") == 1
    assert core.persistence.pending("rec_events") == 1

    written = await core.persistence.flush()
    assert written == core.persistence.rows_written
    assert "/rest/v1/rec_events" in backend.paths


def test_shutdown_detaches_components(core, clock) -> None:
    core.shutdown()
    core.bus.emit(EventType.FEED_DATA_RECEIVED, FeedDataPayload(feed=_feed(clock)))
    assert core.store.get_candles("AAPL", Timeframe.M1) == []
    assert core.scheduler.jobs() == []


async def test_start_and_stop(clock, backend) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend), base_url="http://backend.test")
    config = StagAlgoSettings(_env_file=None, seed_reference_data=False, scheduler_tick_seconds=0.01)
    core = TradingCore(config=config, clock=clock, http_client=client)

    await core.start()
    await core.start()
    assert core.scheduler.jobs()
    await core.stop()
    assert core.scheduler.jobs() == []


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def run_cli(monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)

    def _run(*argv: str) -> int:
        monkeypatch.setattr(sys, "argv", ["stagalgo", *argv])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        return exc_info.value.code

    return _run


def test_cli_validate_passing_trade(run_cli, capsys) -> None:
    assert run_cli("validate", "AAPL", "buy", "10", "190") == 0
    result = json.loads(capsys.readouterr().out)
    assert result["passed"] is True


def test_cli_validate_blocked_trade(run_cli, capsys) -> None:
    assert run_cli("validate", "AAPL", "buy", "600", "100", "--level", "beginner") == 1
    result = json.loads(capsys.readouterr().out)
    assert result["violations"][0]["rule_id"] == "position_size_limit"


def test_cli_validate_rejects_bad_input(run_cli, capsys) -> None:
    assert run_cli("validate", "AAPL", "buy", "-5", "100") == 2
    assert "Invalid trade" in capsys.readouterr().err


def test_cli_health_reports_missing_portfolio(run_cli, capsys) -> None:
    assert run_cli("health") == 1
    health = json.loads(capsys.readouterr().out)
    assert health["store"]["status"] == "unhealthy"
    assert health["store"]["metrics"]["symbols"] > 0


def test_cli_without_command_prints_help(run_cli, capsys) -> None:
    assert run_cli() == 1
    assert "StagAlgo trading core" in capsys.readouterr().out
