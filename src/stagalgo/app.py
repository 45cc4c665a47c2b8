"""Composition root: builds every component against one bus and scheduler."""

from typing import Any

import httpx

from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.bus import EventBus
from stagalgo.core.clock import ClockProtocol, Scheduler, WallClock
from stagalgo.execution.gate import TradeGate
from stagalgo.execution.gateway import ExecutionGateway
from stagalgo.governance.overseer import Overseer
from stagalgo.ingest.repository import Repository
from stagalgo.logging import get_logger
from stagalgo.market_data.candle_fetcher import CandleFetcher
from stagalgo.persistence.writer import PersistenceWriter
from stagalgo.search.service import MarketSearchService
from stagalgo.store.market_store import MarketStore
from stagalgo.validation.validator import TradeValidator

logger = get_logger(__name__)


class TradingCore:
    """Owns the component graph and its lifecycle.

    ``init`` wires subscriptions and scheduled jobs without starting any
    background task, so tests can drive the core with a simulated clock and
    ``scheduler.run_pending()``. ``start``/``stop`` add the asyncio loops.
    """

    def __init__(
        self,
        config: StagAlgoSettings | None = None,
        clock: ClockProtocol | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = config or settings
        self.bus = EventBus()
        self.scheduler = Scheduler(clock or WallClock(), tick_seconds=self.settings.scheduler_tick_seconds)

        self.store = MarketStore(self.bus, self.scheduler, config=self.settings)
        self.repository = Repository(self.bus, self.scheduler, config=self.settings)
        self.validator = TradeValidator(self.bus, self.store, config=self.settings)
        self.overseer = Overseer(self.bus, self.scheduler, self.store, config=self.settings)
        self.search = MarketSearchService(self.bus, self.scheduler, self.store, config=self.settings)

        self.gateway = ExecutionGateway(config=self.settings, client=http_client)
        self.gate = TradeGate(self.bus, self.validator, self.overseer, self.gateway)
        self.candle_fetcher = CandleFetcher(self.store, config=self.settings, client=http_client)
        self.persistence = PersistenceWriter(self.bus, config=self.settings, client=http_client)

        self._initialized = False
        self._started = False

    def init(self) -> None:
        if self._initialized:
            return
        # store first so it sees everything the others publish
        self.store.init()
        self.repository.init()
        self.validator.init()
        self.overseer.init()
        self.search.init()
        self.persistence.init()
        if self.settings.seed_reference_data:
            self.store.seed_reference_data()
        self._initialized = True
        logger.info("Trading core initialized")

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self.persistence.shutdown()
        self.search.shutdown()
        self.overseer.shutdown()
        self.validator.shutdown()
        self.repository.shutdown()
        self.store.shutdown()
        self._initialized = False
        logger.info("Trading core shut down")

    async def start(self) -> None:
        if self._started:
            return
        self.init()
        await self.scheduler.start()
        await self.persistence.start()
        self._started = True
        logger.info("Trading core started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.stop()
        await self.persistence.stop()
        await self.gateway.close()
        await self.candle_fetcher.close()
        self.shutdown()
        self._started = False
        logger.info("Trading core stopped")

    def health(self) -> dict[str, Any]:
        return {
            "store": self.store.get_health(),
            "ingestion": self.repository.get_quality_metrics(),
            "overseer": self.overseer.get_metrics(),
            "jobs": self.scheduler.jobs(),
            "persistence": {
                "pending": self.persistence.pending(),
                "written": self.persistence.rows_written,
                "dropped": self.persistence.rows_dropped,
            },
        }
