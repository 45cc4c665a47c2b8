"""Tests for the write-behind persistence writer."""

import asyncio
import json
from datetime import UTC, datetime

import httpx
import pytest

from stagalgo.config import StagAlgoSettings
from stagalgo.core.event_payloads import TradeFailedPayload
from stagalgo.core.types import EventType, OracleSignal
from stagalgo.persistence import PersistenceWriter
from stagalgo.persistence import writer as writer_module
from stagalgo.persistence.writer import to_row


class Backend:
    def __init__(self, fail_tables=()):
        self.fail_tables = set(fail_tables)
        self.posts: list[tuple[str, list[dict]]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        table = request.url.path.rsplit("/", 1)[-1]
        self.posts.append((table, json.loads(request.content)))
        assert request.headers["Prefer"] == "return=minimal"
        if table in self.fail_tables:
            return httpx.Response(503)
        return httpx.Response(201)


def _writer(bus, backend, **settings) -> PersistenceWriter:
    config = StagAlgoSettings(_env_file=None, **settings)
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend), base_url="http://backend.test")
    return PersistenceWriter(bus, config=config, client=client)


def _fail(bus, trade_id: str) -> None:
    bus.emit(EventType.TRADE_FAILED, TradeFailedPayload(trade_id=trade_id, user_id="u1",
                                                        symbol="AAPL", error="rejected"))


def test_to_row_handles_models_dataclasses_and_mappings() -> None:
    ts = datetime(2024, 6, 3, tzinfo=UTC)
    signal = OracleSignal(id="s1", symbol="aapl", signal_type="analyst", strength=0.5, ts=ts)
    assert to_row(signal)["symbol"] == "AAPL"
    assert to_row(signal)["ts"] == "2024-06-03T00:00:00Z"

    row = to_row(TradeFailedPayload(trade_id="t", user_id="u", symbol="AAPL", error="x"))
    assert row == {"trade_id": "t", "user_id": "u", "symbol": "AAPL", "error": "x"}
    assert to_row({"when": ts, "tags": ("a", "b")}) == {"when": ts.isoformat(), "tags": ["a", "b"]}


async def test_events_are_buffered_per_table(bus, store, clock) -> None:
    writer = _writer(bus, Backend())
    writer.init()

    store.ingest_oracle_signal(
        OracleSignal(id="s1", symbol="AAPL", signal_type="analyst", strength=0.5, ts=clock.now())
    )
    _fail(bus, "t1")

    assert writer.pending("oracle_signals") == 1
    assert writer.pending("rec_events") == 1
    assert writer.pending() == 2

    writer.shutdown()
    _fail(bus, "t2")
    assert writer.pending() == 2


async def test_flush_posts_in_batches(bus) -> None:
    backend = Backend()
    writer = _writer(bus, backend, persistence_batch_size=2)
    writer.init()
    for i in range(5):
        _fail(bus, f"t{i}")

    assert await writer.flush() == 5

    assert [len(rows) for _, rows in backend.posts] == [2, 2, 1]
    assert backend.posts[0][1][0] == {
        "trade_id": "t0", "user_id": "u1", "symbol": "AAPL", "error": "rejected",
        "event_type": "trade.failed",
    }
    assert writer.pending() == 0
    assert writer.rows_written == 5


async def test_failed_batches_are_dropped_and_counted(bus) -> None:
    writer = _writer(bus, Backend(fail_tables={"rec_events"}))
    writer.enqueue("rec_events", {"id": 1})
    writer.enqueue("risk_alerts", {"id": 2})

    assert await writer.flush() == 1
    assert writer.rows_dropped == 1
    assert writer.rows_written == 1
    assert writer.pending() == 0


def test_full_buffer_drops_oldest(bus, monkeypatch) -> None:
    monkeypatch.setattr(writer_module, "BUFFER_CAP", 2)
    writer = _writer(bus, Backend())
    for i in range(3):
        writer.enqueue("rec_events", {"id": i})
    assert writer.pending("rec_events") == 2
    assert writer.rows_dropped == 1


async def test_write_audit_reports_outcome(bus) -> None:
    backend = Backend(fail_tables={"broken"})
    writer = _writer(bus, backend)

    ok = await writer.write_audit("governance_decisions", [{"id": "d1"}, {"id": "d2"}])
    assert ok.success is True
    assert ok.rows == 2

    failed = await writer.write_audit("broken", [{"id": "x"}])
    assert failed.success is False
    assert "503" in failed.message

    empty = await writer.write_audit("governance_decisions", [])
    assert empty.success is True
    assert len(backend.posts) == 2
    assert writer.rows_written == 2


async def test_background_loop_flushes_and_stop_drains(bus) -> None:
    backend = Backend()
    writer = _writer(bus, backend, persistence_flush_seconds=0.01)
    await writer.start()

    _fail(bus, "t1")
    for _ in range(100):
        if backend.posts:
            break
        await asyncio.sleep(0.01)
    assert backend.posts[0][1][0]["trade_id"] == "t1"

    _fail(bus, "t2")
    await writer.stop()
    assert writer.pending() == 0
    assert writer.rows_written == 2

    _fail(bus, "t3")
    assert writer.pending() == 0


@pytest.mark.parametrize("api_key", ["", "secret"])
async def test_auth_headers_follow_api_key(bus, api_key) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://backend.test")
    writer = PersistenceWriter(bus, config=StagAlgoSettings(_env_file=None, backend_api_key=api_key),
                               client=client)
    await writer.write_audit("risk_alerts", [{"id": 1}])
    assert ("apikey" in seen[0].headers) is bool(api_key)


async def test_flush_tolerates_tables_added_while_posting(bus) -> None:
    posts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        table = request.url.path.rsplit("/", 1)[-1]
        posts.append(table)
        if table == "rec_events":
            writer.enqueue("late_table", {"id": 2})
        return httpx.Response(201)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://backend.test")
    writer = PersistenceWriter(bus, config=StagAlgoSettings(_env_file=None), client=client)
    writer.enqueue("rec_events", {"id": 1})

    assert await writer.flush() == 1
    assert writer.rows_written == 1
    assert writer.pending("late_table") == 1

    assert await writer.flush() == 1
    assert posts == ["rec_events", "late_table"]
    assert writer.rows_written == 2


async def test_stop_completes_when_final_flush_fails(bus, monkeypatch, caplog) -> None:
    writer = PersistenceWriter(bus, config=StagAlgoSettings(_env_file=None, persistence_flush_seconds=60))
    await writer.start()
    writer.enqueue("rec_events", {"id": 1})

    async def broken_flush() -> int:
        raise RuntimeError("flush blew up")

    monkeypatch.setattr(writer, "flush", broken_flush)
    await writer.stop()

    assert "flush blew up" in caplog.text
    assert writer._flush_task is None
    assert writer._client is None
