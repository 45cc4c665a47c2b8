"""Tests for the synchronous event bus."""

from datetime import UTC, datetime

import pytest

from stagalgo.core.bus import EventBus
from stagalgo.core.event_payloads import CandleStoredPayload, PortfolioUpdatedPayload
from stagalgo.core.types import Event, EventType

TS = datetime(2024, 1, 1, tzinfo=UTC)


def _stored(symbol: str = "AAPL") -> CandleStoredPayload:
    return CandleStoredPayload(symbol=symbol, timeframe="1m", ts=TS)


def test_handlers_run_in_registration_order_before_emit_returns() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.subscribe(EventType.CANDLE_STORED, lambda e: calls.append("first"))
    bus.subscribe(EventType.CANDLE_STORED, lambda e: calls.append("second"))

    bus.emit(EventType.CANDLE_STORED, _stored())

    assert calls == ["first", "second"]
    assert bus.published_count(EventType.CANDLE_STORED) == 1


def test_subscribe_returns_unsubscribe_callable() -> None:
    bus = EventBus()
    received: list[Event] = []
    unsubscribe = bus.subscribe(EventType.CANDLE_STORED, received.append)

    bus.emit(EventType.CANDLE_STORED, _stored())
    unsubscribe()
    unsubscribe()  # second call is a no-op
    bus.emit(EventType.CANDLE_STORED, _stored())

    assert len(received) == 1
    assert bus.subscriber_count(EventType.CANDLE_STORED) == 0


def test_wrong_payload_type_raises_type_error() -> None:
    bus = EventBus()
    with pytest.raises(TypeError, match="bid.candle_stored"):
        bus.emit(EventType.CANDLE_STORED, {"symbol": "AAPL"})

    with pytest.raises(TypeError):
        bus.emit(
            EventType.CANDLE_STORED,
            PortfolioUpdatedPayload(equity=1.0, cash=1.0, position_count=0, ts=TS),
        )
    assert bus.published_count(EventType.CANDLE_STORED) == 0


def test_handler_exception_propagates_to_publisher() -> None:
    bus = EventBus()

    def boom(event: Event) -> None:
        raise RuntimeError("handler failed")

    bus.subscribe(EventType.CANDLE_STORED, boom)
    with pytest.raises(RuntimeError, match="handler failed"):
        bus.emit(EventType.CANDLE_STORED, _stored())


def test_subscription_added_during_dispatch_sees_next_event_only() -> None:
    bus = EventBus()
    late: list[Event] = []

    def subscribe_late(event: Event) -> None:
        bus.subscribe(EventType.CANDLE_STORED, late.append)

    unsubscribe = bus.subscribe(EventType.CANDLE_STORED, subscribe_late)
    bus.emit(EventType.CANDLE_STORED, _stored())
    assert late == []

    unsubscribe()
    bus.emit(EventType.CANDLE_STORED, _stored("MSFT"))
    assert [e.payload.symbol for e in late] == ["MSFT"]


def test_publish_without_subscribers_is_counted() -> None:
    bus = EventBus()
    bus.publish(Event(event_type=EventType.CANDLE_STORED, payload=_stored()))
    assert bus.published_count(EventType.CANDLE_STORED) == 1


def test_clear_removes_all_subscriptions() -> None:
    bus = EventBus()
    bus.subscribe(EventType.CANDLE_STORED, lambda e: None)
    bus.subscribe(EventType.RISK_ALERT, lambda e: None)
    bus.clear()
    assert bus.subscriber_count(EventType.CANDLE_STORED) == 0
    assert bus.subscriber_count(EventType.RISK_ALERT) == 0
