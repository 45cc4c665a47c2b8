"""Tests for the structured logging module.

Covers:
- JSONFormatter produces valid JSON with the trading context fields
- Text formatter appends only the context that is set
- log_exception() attaches the traceback and context
"""

import io
import json
import logging

from stagalgo.logging import (
    JSONFormatter,
    TradingContextFilter,
    _TradingTextFormatter,
    clear_trading_context,
    get_logger,
    log_exception,
    set_trading_context,
    setup_logging,
)


def _capture(formatter: logging.Formatter) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    handler.addFilter(TradingContextFilter())
    logger = logging.getLogger(f"test.{id(stream)}")
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    logger.propagate = False
    return logger, stream


def test_json_formatter_includes_trading_context() -> None:
    logger, stream = _capture(JSONFormatter())
    set_trading_context(user_id="u1", symbol="AAPL", trade_id="t-1")
    try:
        logger.info("validated")
    finally:
        clear_trading_context()

    record = json.loads(stream.getvalue())
    assert record["message"] == "validated"
    assert record["level"] == "INFO"
    assert record["user_id"] == "u1"
    assert record["symbol"] == "AAPL"
    assert record["trade_id"] == "t-1"
    assert record["service"] == "stagalgo"


def test_context_fields_empty_after_clear() -> None:
    logger, stream = _capture(JSONFormatter())
    set_trading_context(symbol="MSFT")
    clear_trading_context()
    logger.info("no context")
    record = json.loads(stream.getvalue())
    assert record["symbol"] == ""
    assert record["user_id"] == ""


def test_text_formatter_only_shows_set_context() -> None:
    logger, stream = _capture(_TradingTextFormatter())
    set_trading_context(symbol="TSLA")
    try:
        logger.warning("spread wide")
    finally:
        clear_trading_context()

    line = stream.getvalue()
    assert "[sym=TSLA]" in line
    assert "[user=" not in line
    assert line.rstrip().endswith("| spread wide")


def test_log_exception_records_traceback_and_context() -> None:
    logger, stream = _capture(JSONFormatter())
    try:
        raise ValueError("bad record")
    except ValueError as e:
        log_exception(logger, e, {"symbol": "AAPL"})

    record = json.loads(stream.getvalue())
    assert record["level"] == "ERROR"
    assert record["exc_type"] == "ValueError"
    assert "context={'symbol': 'AAPL'}" in record["message"]


def test_setup_logging_is_idempotent() -> None:
    root = logging.getLogger()
    saved, saved_level = root.handlers[:], root.level
    root.handlers.clear()
    try:
        setup_logging(level="DEBUG", log_format="json")
        setup_logging(level="WARNING")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved
        root.setLevel(saved_level)


def test_get_logger_returns_named_logger() -> None:
    assert get_logger("stagalgo.store").name == "stagalgo.store"
