"""Write-behind persistence to the hosted backend.

Bus events are buffered per table and flushed in batches by a background
loop. ``enqueue`` never blocks or raises; ``write_audit`` is awaited and
reports its outcome.
"""

import asyncio
import dataclasses
from collections import deque
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel

from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.bus import EventBus
from stagalgo.core.types import Event, EventType
from stagalgo.logging import get_logger, log_exception

logger = get_logger(__name__)

REST_PATH = "/rest/v1"
BUFFER_CAP = 10000

# Event topic -> (table, payload attribute holding the record)
PERSISTED_TOPICS: dict[EventType, tuple[str, str | None]] = {
    EventType.ORACLE_SIGNAL_ADDED: ("oracle_signals", "signal"),
    EventType.RISK_METRICS_UPDATED: ("risk_portfolio", "snapshot"),
    EventType.GOVERNANCE_DECISION: ("governance_decisions", "decision"),
    EventType.RISK_ALERT: ("risk_alerts", "alert"),
    EventType.VALIDATION_VIOLATION: ("validation_violations", None),
    EventType.TRADE_EXECUTED: ("rec_events", None),
    EventType.TRADE_FAILED: ("rec_events", None),
}


class WriteResult(BaseModel):
    success: bool
    message: str
    rows: int = 0


def to_row(value: Any) -> dict[str, Any]:
    """JSON-ready dict for a pydantic model, dataclass or mapping."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: to_row(v) if _is_record(v) else _jsonable(v) for k, v in _fields(value)}
    return {str(k): _jsonable(v) for k, v in dict(value).items()}


def _is_record(value: Any) -> bool:
    return isinstance(value, BaseModel) or (
        dataclasses.is_dataclass(value) and not isinstance(value, type)
    )


def _fields(value: Any) -> list[tuple[str, Any]]:
    return [(f.name, getattr(value, f.name)) for f in dataclasses.fields(value)]


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


class PersistenceWriter:
    """Buffers rows per table and posts them in batches."""

    def __init__(
        self,
        bus: EventBus,
        config: StagAlgoSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._bus = bus
        self._settings = config or settings
        self._client = client
        self._owns_client = client is None
        self._buffers: dict[str, deque[dict[str, Any]]] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self._flush_task: asyncio.Task | None = None
        self._running = False
        self.rows_written = 0
        self.rows_dropped = 0

    def init(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(topic, self._handle_event) for topic in PERSISTED_TOPICS
        ]

    def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def start(self) -> None:
        if self._running:
            return
        self.init()
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(f"Persistence writer started (flush every {self._settings.persistence_flush_seconds}s)")

    async def stop(self) -> None:
        """Cancel the loop, flush what is buffered and release the client."""
        self._running = False
        self.shutdown()
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        try:
            await self.flush()
        except Exception as e:
            log_exception(logger, e, {"component": "persistence_writer"})
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info(f"Persistence writer stopped ({self.rows_written} rows written)")

    def enqueue(self, table: str, row: dict[str, Any]) -> None:
        buffer = self._buffers.setdefault(table, deque(maxlen=BUFFER_CAP))
        if len(buffer) == buffer.maxlen:
            self.rows_dropped += 1
        buffer.append(row)

    def pending(self, table: str | None = None) -> int:
        if table is not None:
            return len(self._buffers.get(table, ()))
        return sum(len(b) for b in self._buffers.values())

    async def flush(self) -> int:
        """Post every buffered row; failed batches are dropped and counted."""
        written = 0
        batch_size = self._settings.persistence_batch_size
        # enqueue may add tables while a post is awaited
        for table, buffer in list(self._buffers.items()):
            while buffer:
                batch = [buffer.popleft() for _ in range(min(batch_size, len(buffer)))]
                result = await self._post(table, batch)
                if result.success:
                    written += len(batch)
                    self.rows_written += len(batch)
                else:
                    self.rows_dropped += len(batch)
        return written

    async def write_audit(self, table: str, rows: list[dict[str, Any]]) -> WriteResult:
        """Write ``rows`` immediately and report the outcome."""
        if not rows:
            return WriteResult(success=True, message="nothing to write")
        result = await self._post(table, rows)
        if result.success:
            self.rows_written += len(rows)
        return result

    async def _post(self, table: str, rows: list[dict[str, Any]]) -> WriteResult:
        try:
            response = await self._get_client().post(
                f"{REST_PATH}/{table}", json=rows, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Persistence write to {table} failed ({len(rows)} rows): {e}")
            return WriteResult(success=False, message=str(e) or type(e).__name__)
        logger.debug(f"Persisted {len(rows)} rows to {table}")
        return WriteResult(success=True, message=f"wrote {len(rows)} rows", rows=len(rows))

    async def _flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.persistence_flush_seconds)
            try:
                await self.flush()
            except Exception as e:
                log_exception(logger, e, {"component": "persistence_writer"})

    def _handle_event(self, event: Event) -> None:
        table, attribute = PERSISTED_TOPICS[event.event_type]
        record = getattr(event.payload, attribute) if attribute else event.payload
        row = to_row(record)
        row.setdefault("event_type", event.event_type.value)
        self.enqueue(table, row)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.backend_url,
                timeout=self._settings.execution_timeout_seconds,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Prefer": "return=minimal"}
        if self._settings.backend_api_key:
            headers["apikey"] = self._settings.backend_api_key
            headers["Authorization"] = f"Bearer {self._settings.backend_api_key}"
        return headers
