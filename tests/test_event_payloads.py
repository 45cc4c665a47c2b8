"""Tests for the closed topic set and its payload registry."""

from datetime import UTC, datetime

import pytest

from stagalgo.core.event_payloads import (
    PAYLOAD_REGISTRY,
    CandleStoredPayload,
    SearchCompletedPayload,
    coverage_report,
    payload_class_for,
    required_fields,
    validate_payload,
)
from stagalgo.core.types import EventType


def test_every_topic_has_a_payload_class() -> None:
    report = coverage_report()
    assert set(report) == {et.value for et in EventType}
    assert all(report.values())
    assert set(PAYLOAD_REGISTRY) == set(EventType)


def test_payload_class_lookup_and_validation() -> None:
    payload = CandleStoredPayload(symbol="AAPL", timeframe="1m", ts=datetime(2024, 1, 1, tzinfo=UTC))
    assert payload_class_for(EventType.CANDLE_STORED) is CandleStoredPayload
    assert validate_payload(EventType.CANDLE_STORED, payload)
    assert not validate_payload(EventType.PORTFOLIO_UPDATED, payload)
    assert not validate_payload(EventType.CANDLE_STORED, {"symbol": "AAPL"})


def test_required_fields_exclude_defaults() -> None:
    assert required_fields(EventType.CANDLE_STORED) == {"symbol", "timeframe", "ts"}
    assert required_fields(EventType.SEARCH_COMPLETED) == {"query", "result_count"}
    assert required_fields(EventType.VALIDATION_VIOLATION) == {"user_id", "symbol", "violation"}


def test_payloads_are_frozen() -> None:
    payload = SearchCompletedPayload(query="tech", result_count=3)
    with pytest.raises(AttributeError):
        payload.query = "other"  # type: ignore[misc]
