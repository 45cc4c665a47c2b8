"""Shared test fixtures: simulated clock, bus, scheduler and store."""

from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from stagalgo.config import StagAlgoSettings
from stagalgo.core.bus import EventBus
from stagalgo.core.clock import Scheduler, SimulatedClock
from stagalgo.core.types import Candle, Event, EventType, Timeframe
from stagalgo.store.market_store import MarketStore

START = datetime(2024, 6, 3, 14, 30, tzinfo=UTC)


@pytest.fixture
def clock() -> SimulatedClock:
    return SimulatedClock(start=START)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def scheduler(clock: SimulatedClock) -> Scheduler:
    return Scheduler(clock)


@pytest.fixture
def config() -> StagAlgoSettings:
    return StagAlgoSettings(_env_file=None, seed_reference_data=False)


@pytest.fixture
def store(bus: EventBus, scheduler: Scheduler, config: StagAlgoSettings) -> MarketStore:
    market_store = MarketStore(bus, scheduler, config=config)
    market_store.init()
    yield market_store
    market_store.shutdown()


@pytest.fixture
def recorder(bus: EventBus) -> Callable[..., list[Event]]:
    """Subscribe to one or more topics and collect what gets published."""

    def _record(*event_types: EventType) -> list[Event]:
        events: list[Event] = []
        for event_type in event_types:
            bus.subscribe(event_type, events.append)
        return events

    return _record


@pytest.fixture
def make_candles(clock: SimulatedClock) -> Callable[..., list[Candle]]:
    """Build a candle series ending at the clock's current time."""

    def _make(
        symbol: str,
        closes: list[float],
        timeframe: Timeframe = Timeframe.D1,
        volume: float = 1_000_000.0,
        spread: float = 1.0,
    ) -> list[Candle]:
        step = timeframe.duration
        first = clock.now() - step * (len(closes) - 1)
        return [
            Candle(
                symbol=symbol,
                timeframe=timeframe,
                ts=first + step * i,
                open=close,
                high=close + spread,
                low=max(close - spread, 0.0),
                close=close,
                volume=volume,
            )
            for i, close in enumerate(closes)
        ]

    return _make

