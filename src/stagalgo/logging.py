"""Structured logging setup with trading-context support.

Two output formats are supported, controlled by the ``LOG_FORMAT`` environment
variable (mapped to ``settings.log_format``):

- ``text`` (default): human-readable console output.
  Format: ``2024-01-01 12:00:00 | INFO     | stagalgo.store | [user=u1] [sym=AAPL] | message``

- ``json``: one JSON object per line with fields ``timestamp``, ``level``,
  ``logger``, ``message``, ``user_id``, ``symbol``, ``trade_id``, ``service``
  and, on exceptions, ``exc_type`` / ``exc_value`` / ``exc_trace``.

Context propagation:
  The ContextVars below are copied into asyncio tasks on spawn, so binding
  them at the start of a validation or governance pass tags every log line
  emitted inside that pass.

    ``user_id_var`` : user whose trade is being validated.
    ``symbol_var``  : instrument being processed, e.g. "AAPL".
    ``trade_id_var``: trade identifier when one is known.

  Use ``set_trading_context()`` / ``clear_trading_context()`` rather than
  touching the ContextVars directly.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
symbol_var: ContextVar[str | None] = ContextVar("symbol", default=None)
trade_id_var: ContextVar[str | None] = ContextVar("trade_id", default=None)

_SERVICE_NAME = "stagalgo"


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

class TradingContextFilter(logging.Filter):
    """Inject the trading context into every log record.

    Fields are empty strings when unset so aggregators can filter on
    ``symbol != ""``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.user_id = user_id_var.get() or ""
        record.symbol = symbol_var.get() or ""
        record.trade_id = trade_id_var.get() or ""
        return True


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

class JSONFormatter(logging.Formatter):
    """Emit one JSON object per log line.

    Non-serialisable values are coerced with ``default=str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "user_id": getattr(record, "user_id", ""),
            "symbol": getattr(record, "symbol", ""),
            "trade_id": getattr(record, "trade_id", ""),
            "service": _SERVICE_NAME,
        }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exc_type"] = exc_type.__name__ if exc_type else None
            payload["exc_value"] = str(exc_value)
            payload["exc_trace"] = traceback.format_exception(exc_type, exc_value, exc_tb)

        return json.dumps(payload, default=str)


class _TradingTextFormatter(logging.Formatter):
    """Human-readable formatter that appends only the context fields that are set."""

    _BASE_FMT = "%(asctime)s | %(levelname)-8s | %(name)s"
    _DATE_FMT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self._BASE_FMT, datefmt=self._DATE_FMT)

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        tokens: list[str] = []
        user_id = getattr(record, "user_id", "")
        symbol = getattr(record, "symbol", "")
        trade_id = getattr(record, "trade_id", "")
        if user_id:
            tokens.append(f"[user={user_id}]")
        if symbol:
            tokens.append(f"[sym={symbol}]")
        if trade_id:
            tokens.append(f"[trade={trade_id}]")

        context_part = (" | " + " ".join(tokens)) if tokens else ""
        line = f"{base}{context_part} | {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ---------------------------------------------------------------------------
# Public setup function
# ---------------------------------------------------------------------------

def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure root logging from ``settings.log_level`` / ``settings.log_format``.

    Safe to call more than once: a handler is only added when the root logger
    has none yet.
    """
    # Imported here so that importing this module never pulls in settings.
    from stagalgo.config import settings

    log_level_str = (level or settings.log_level).upper()
    fmt = (log_format or settings.log_format).lower()
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    if root_logger.handlers:
        root_logger.setLevel(log_level)
        return

    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(TradingContextFilter())
    if fmt == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(_TradingTextFormatter())
    root_logger.addHandler(console_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialised (level=%s, format=%s)", log_level_str, fmt
    )


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------

def set_trading_context(
    user_id: str | None = None,
    symbol: str | None = None,
    trade_id: str | None = None,
) -> None:
    """Bind trading context into the current async context.

    Omitted arguments leave the corresponding ContextVar unchanged::

        set_trading_context(user_id="u1", symbol="AAPL")
        try:
            ...
        finally:
            clear_trading_context()
    """
    if user_id is not None:
        user_id_var.set(user_id)
    if symbol is not None:
        symbol_var.set(symbol)
    if trade_id is not None:
        trade_id_var.set(trade_id)


def clear_trading_context() -> None:
    """Clear all trading ContextVars in the current async context."""
    user_id_var.set(None)
    symbol_var.set(None)
    trade_id_var.set(None)


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

def get_logger(name: str) -> logging.Logger:
    """Return a standard ``logging.Logger`` for the given module name."""
    return logging.getLogger(name)


# ---------------------------------------------------------------------------
# Exception helper
# ---------------------------------------------------------------------------

def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    context: dict[str, Any] | None = None,
) -> None:
    """Log an exception with optional structured context and its traceback."""
    context_str = f" | context={context}" if context else ""
    logger.error("Exception: %s%s", exc, context_str, exc_info=exc)
