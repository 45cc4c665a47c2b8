"""Ingestion cleaning layer.

Consumes raw feed records, CSV imports and broker snapshots from the bus,
rejects what cannot be trusted and republishes clean data for the store:

- ``feed.data_received``       → quote → candles (``repository.candle_processed``)
                                 and ``repository.market_data_cleaned``;
                                 news → ``oracle.signal_created``.
- ``cradle.csv_imported``      → one candle per row (``repository.candle_processed``).
- ``broker.snapshot_received`` → ``repository.portfolio_processed``.

Records are rejected when a required field is missing (malformed), when
older than ``feed_stale_seconds`` (stale), or when their id was already seen
(duplicate). Handlers never raise into the publisher.
"""

import re
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from stagalgo.config import StagAlgoSettings, settings
from stagalgo.core.bus import EventBus
from stagalgo.core.clock import CancelToken, Scheduler
from stagalgo.core.event_payloads import (
    CandleProcessedPayload,
    MarketDataCleanedPayload,
    OracleSignalCreatedPayload,
    PortfolioProcessedPayload,
)
from stagalgo.core.types import Candle, Event, EventType, PortfolioSnapshot, Position, Timeframe
from stagalgo.ingest.aggregator import CandleAggregator, floor_time
from stagalgo.logging import get_logger, log_exception

logger = get_logger(__name__)

REQUIRED_FEED_FIELDS = ("id", "source", "timestamp", "data_type", "raw_data", "received_at")
LIVE_SECONDS = 10
WARM_SECONDS = 60
EQUITY_TOLERANCE = 1.0
SEEN_IDS_CAP = 10_000

_TICKER_PATTERN = re.compile(r"^[A-Z][A-Z0-9.\-]{0,9}$")

POSITIVE_WORDS = ("up", "rise", "gain", "bull", "strong", "growth", "profit")
NEGATIVE_WORDS = ("down", "fall", "loss", "bear", "weak", "decline")

Freshness = Literal["live", "warm", "stale"]


@dataclass(frozen=True)
class TickerResolution:
    canonical: str
    aliases: tuple[str, ...] = ()
    market: str = "UNKNOWN"
    asset_type: str = "stock"


DEFAULT_TICKERS = (
    TickerResolution("AAPL", ("Apple",), "NASDAQ"),
    TickerResolution("MSFT", ("Microsoft",), "NASDAQ"),
    TickerResolution("GOOGL", ("Google", "Alphabet"), "NASDAQ"),
    TickerResolution("AMZN", ("Amazon",), "NASDAQ"),
    TickerResolution("TSLA", ("Tesla",), "NASDAQ"),
    TickerResolution("SPY", ("S&P 500",), "ARCA", "etf"),
)


class CleanedQuote(BaseModel):
    """Normalized price observation for one symbol."""

    symbol: str
    price: float
    volume: int
    bid: float
    ask: float
    spread: float
    spread_pct: float
    change: float
    change_percent: float
    ts: datetime
    source: str
    freshness: Freshness
    quality_score: float


@dataclass
class QualityMetrics:
    total_received: int = 0
    processed: int = 0
    rejected_stale: int = 0
    rejected_malformed: int = 0
    deduplicated: int = 0
    unresolved_tickers: int = 0
    quality_score_sum: float = 0.0
    quotes: int = 0
    last_reset: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def avg_quality_score(self) -> float:
        return self.quality_score_sum / self.quotes if self.quotes else 0.0

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("quality_score_sum")
        data["avg_quality_score"] = round(self.avg_quality_score, 4)
        data["last_reset"] = self.last_reset.isoformat()
        return data


def normalize_price(value: Any) -> float:
    """Non-negative float, 0.0 for anything unparsable."""
    try:
        price = float(value)
    except (TypeError, ValueError):
        return 0.0
    if price != price:  # NaN
        return 0.0
    return max(0.0, price)


def normalize_volume(value: Any) -> int:
    """Non-negative integer, 0 for anything unparsable."""
    try:
        volume = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, volume)


def quality_score(raw: Mapping[str, Any], price: float, spread: float) -> float:
    """1.0 minus penalties for missing quote fields, wide spreads and thin volume."""
    score = 1.0
    if not raw.get("bid") or not raw.get("ask"):
        score -= 0.2
    if not raw.get("volume"):
        score -= 0.3
    if not raw.get("change") or not raw.get("change_percent"):
        score -= 0.1
    if price > 0 and spread > price * 0.1:
        score -= 0.2
    volume = raw.get("volume")
    if volume is not None and normalize_volume(volume) < 100:
        score -= 0.2
    return max(0.0, round(score, 10))


def extract_sentiment(text: str) -> float:
    """Keyword sentiment in [-1, 1]: +0.1 per positive word, -0.1 per negative word."""
    lowered = text.lower()
    sentiment = 0.1 * sum(word in lowered for word in POSITIVE_WORDS)
    sentiment -= 0.1 * sum(word in lowered for word in NEGATIVE_WORDS)
    return max(-1.0, min(1.0, sentiment))


def parse_timestamp(value: Any) -> datetime:
    """Accept datetimes, ISO-8601 strings and epoch seconds/milliseconds.

    Raises:
        ValueError: If the value cannot be interpreted as a point in time.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise ValueError(f"Unsupported timestamp: {value!r}")


class Repository:
    """Cleaning layer between raw feeds and the store."""

    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler,
        config: StagAlgoSettings | None = None,
    ) -> None:
        self._bus = bus
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._settings = config or settings
        self._tickers: dict[str, TickerResolution] = {}
        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        self._latest_quotes: dict[str, CleanedQuote] = {}
        self._aggregator = CandleAggregator()
        self._metrics = QualityMetrics(last_reset=self._clock.now())
        self._unsubscribers: list[Callable[[], None]] = []
        self._tokens: list[CancelToken] = []

        for resolution in DEFAULT_TICKERS:
            self._register(resolution)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def init(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(EventType.FEED_DATA_RECEIVED, self._on_feed),
            self._bus.subscribe(EventType.CSV_IMPORTED, self._on_csv),
            self._bus.subscribe(EventType.BROKER_SNAPSHOT_RECEIVED, self._on_broker_snapshot),
        ]
        self._tokens = [
            self._scheduler.schedule(
                timedelta(seconds=self._settings.performance_interval_seconds),
                self.reset_daily_metrics,
                name="repository.reset_metrics",
            )
        ]
        logger.info(f"Repository initialized with {len(self._tickers)} ticker keys")

    def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        for token in self._tokens:
            token.cancel()
        self._unsubscribers.clear()
        self._tokens.clear()

    # ── Ticker resolution ───────────────────────────────────────────────────

    def add_ticker_mapping(
        self,
        symbol: str,
        canonical: str,
        aliases: Iterable[str] = (),
        market: str = "UNKNOWN",
        asset_type: str = "stock",
    ) -> None:
        resolution = TickerResolution(canonical.upper(), tuple(aliases), market, asset_type)
        self._tickers[symbol.strip().upper()] = resolution
        self._register(resolution)

    def resolve_ticker(self, raw: Any) -> str | None:
        """Canonical symbol for a ticker or company alias.

        Unmapped inputs that already look like a ticker resolve to themselves.
        """
        if not isinstance(raw, str) or not raw.strip():
            return None
        key = raw.strip().upper()
        resolution = self._tickers.get(key)
        if resolution is not None:
            return resolution.canonical
        if _TICKER_PATTERN.match(key):
            return key
        return None

    def _register(self, resolution: TickerResolution) -> None:
        self._tickers[resolution.canonical] = resolution
        for alias in resolution.aliases:
            self._tickers[alias.upper()] = resolution

    # ── Feed records ────────────────────────────────────────────────────────

    def ingest_feed(self, feed: Mapping[str, Any], *, check_staleness: bool = True) -> CleanedQuote | None:
        """Validate, de-duplicate and process one raw feed record.

        Returns:
            The cleaned quote for price records, otherwise ``None``.
        """
        self._metrics.total_received += 1
        if not isinstance(feed, Mapping) or not all(feed.get(k) for k in REQUIRED_FEED_FIELDS):
            self._metrics.rejected_malformed += 1
            logger.warning(f"Rejected malformed feed record from {_source_of(feed)}")
            return None
        if not isinstance(feed["raw_data"], Mapping):
            self._metrics.rejected_malformed += 1
            logger.warning(f"Rejected feed {feed['id']}: raw_data is not an object")
            return None

        try:
            ts = parse_timestamp(feed["timestamp"])
        except (ValueError, OverflowError, OSError) as e:
            self._metrics.rejected_malformed += 1
            logger.warning(f"Rejected feed {feed['id']}: bad timestamp ({e})")
            return None

        age_seconds = (self._clock.now() - ts).total_seconds()
        if check_staleness and age_seconds > self._settings.feed_stale_seconds:
            self._metrics.rejected_stale += 1
            logger.debug(f"Rejected stale feed {feed['id']} ({age_seconds:.0f}s old)")
            return None

        feed_id = str(feed["id"])
        if feed_id in self._seen_ids:
            self._metrics.deduplicated += 1
            return None
        self._seen_ids[feed_id] = None
        if len(self._seen_ids) > SEEN_IDS_CAP:
            self._seen_ids.popitem(last=False)

        self._metrics.processed += 1
        data_type = feed["data_type"]
        if data_type == "price":
            return self._process_price(feed, ts, age_seconds)
        if data_type == "news":
            self._process_news(feed, ts)
            return None
        logger.debug(f"Feed {feed_id}: data type '{data_type}' has no consumer")
        return None

    def _process_price(self, feed: Mapping[str, Any], ts: datetime, age_seconds: float) -> CleanedQuote | None:
        raw = feed["raw_data"]
        symbol = self.resolve_ticker(feed.get("symbol") or raw.get("symbol"))
        if symbol is None:
            self._metrics.unresolved_tickers += 1
            logger.warning(f"Unable to resolve ticker for feed {feed['id']}")
            return None

        price = normalize_price(raw.get("price") or raw.get("last") or raw.get("close"))
        if price <= 0:
            self._metrics.rejected_malformed += 1
            logger.warning(f"Rejected feed {feed['id']}: no usable price")
            return None

        bid = normalize_price(raw.get("bid")) or price
        ask = normalize_price(raw.get("ask")) or price
        spread = abs(ask - bid)
        volume = normalize_volume(raw.get("volume", 0))
        score = quality_score(raw, price, spread)
        quote = CleanedQuote(
            symbol=symbol,
            price=price,
            volume=volume,
            bid=bid,
            ask=ask,
            spread=spread,
            spread_pct=spread / price,
            change=_as_float(raw.get("change")),
            change_percent=_as_float(raw.get("change_percent")),
            ts=ts,
            source=str(feed["source"]),
            freshness=_freshness(age_seconds),
            quality_score=score,
        )
        self._latest_quotes[symbol] = quote
        self._metrics.quotes += 1
        self._metrics.quality_score_sum += score

        for candle in self._aggregator.update(symbol, price, volume, ts):
            self._publish(EventType.CANDLE_PROCESSED, CandleProcessedPayload(candle=candle))
        self._publish(EventType.MARKET_DATA_CLEANED, MarketDataCleanedPayload(quote=quote))
        return quote

    def _process_news(self, feed: Mapping[str, Any], ts: datetime) -> None:
        raw = feed["raw_data"]
        symbol = self.resolve_ticker(feed.get("symbol") or raw.get("symbol"))
        if symbol is None:
            self._metrics.unresolved_tickers += 1
            return
        headline = str(raw.get("headline") or "")
        summary = str(raw.get("summary") or "")
        sentiment = extract_sentiment(f"{headline} {summary}")
        if sentiment > 0:
            direction = "bull"
        elif sentiment < 0:
            direction = "bear"
        else:
            direction = "neutral"
        signal = {
            "id": f"news_{feed['id']}",
            "symbol": symbol,
            "signal_type": "news_sentiment",
            "strength": abs(sentiment),
            "direction": direction,
            "source": str(feed["source"]),
            "ts": ts,
            "summary": headline or summary,
            "factors": {"sentiment": max(0.0, -sentiment)},
        }
        self._publish(EventType.ORACLE_SIGNAL_CREATED, OracleSignalCreatedPayload(signal=signal))

    # ── CSV imports ─────────────────────────────────────────────────────────

    def process_csv(self, rows: Iterable[Any], source: str = "csv_import") -> int:
        """Turn each row into a candle on its own timeframe (``D1`` by default).

        Rows keep their own open/high/low/close and may arrive in any order;
        the live staleness gate does not apply to imports. Rows that are not
        mappings or lack a symbol, timestamp or positive close are counted as
        malformed and skipped.

        Returns:
            The number of candles published.
        """
        now = self._clock.now()
        accepted = 0
        for row in rows:
            self._metrics.total_received += 1
            candle = self._csv_candle(row, now)
            if candle is None:
                self._metrics.rejected_malformed += 1
                continue
            self._metrics.processed += 1
            self._publish(EventType.CANDLE_PROCESSED, CandleProcessedPayload(candle=candle))
            accepted += 1
        logger.info(f"CSV import from {source}: {accepted} rows accepted")
        return accepted

    def _csv_candle(self, row: Any, now: datetime) -> Candle | None:
        if not isinstance(row, Mapping):
            logger.warning(f"Skipping CSV row of type {type(row).__name__}")
            return None
        symbol = self.resolve_ticker(row.get("symbol") or row.get("ticker"))
        if symbol is None:
            logger.warning(f"Skipping CSV row without a usable symbol: {row!r}")
            return None
        close = normalize_price(row.get("close") or row.get("price"))
        if close <= 0:
            logger.warning(f"Skipping CSV row for {symbol}: no usable close")
            return None
        try:
            timeframe = Timeframe(row.get("timeframe") or row.get("tf") or Timeframe.D1)
            ts = parse_timestamp(row.get("timestamp") or row.get("date") or now)
            return Candle(
                symbol=symbol,
                timeframe=timeframe,
                ts=floor_time(ts, timeframe.duration),
                open=normalize_price(row.get("open")) or close,
                high=normalize_price(row.get("high")) or close,
                low=normalize_price(row.get("low")) or close,
                close=close,
                volume=normalize_volume(row.get("volume", 0)),
                vwap=normalize_price(row.get("vwap")) or None,
            )
        except (ValueError, OverflowError, OSError) as e:
            logger.warning(f"Skipping CSV row for {symbol}: {e}")
            return None

    # ── Broker snapshots ────────────────────────────────────────────────────

    def process_broker_snapshot(self, snapshot: Mapping[str, Any]) -> PortfolioProcessedPayload | None:
        """Clean a broker account snapshot and forward it to the store.

        Market value and unrealized P&L are derived from ``currentPrice`` when
        the broker omits them. Negative equity or cash rejects the snapshot.
        """
        self._metrics.total_received += 1
        try:
            equity = float(snapshot["equity"])
            cash = float(snapshot["cash"])
            ts = parse_timestamp(snapshot.get("timestamp") or self._clock.now())
        except (KeyError, TypeError, ValueError) as e:
            self._metrics.rejected_malformed += 1
            logger.warning(f"Rejected broker snapshot: {e}")
            return None

        if equity < 0 or cash < 0:
            self._metrics.rejected_malformed += 1
            logger.warning(f"Rejected broker snapshot: negative equity ({equity}) or cash ({cash})")
            return None

        positions: tuple[Position, ...] | None = None
        if snapshot.get("positions") is not None:
            try:
                positions = tuple(_clean_position(p, ts) for p in snapshot["positions"])
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                self._metrics.rejected_malformed += 1
                logger.warning(f"Rejected broker snapshot positions: {e}")
                return None

            implied = cash + sum(p.market_value for p in positions)
            if abs(implied - equity) > EQUITY_TOLERANCE:
                logger.warning(
                    f"Broker equity {equity:.2f} differs from cash + market value {implied:.2f}"
                )

        try:
            portfolio = PortfolioSnapshot(ts=ts, equity=equity, cash=cash,
                                          buying_power=snapshot.get("buyingPower"))
        except ValidationError as e:
            self._metrics.rejected_malformed += 1
            logger.warning(f"Rejected broker snapshot: {e}")
            return None

        self._metrics.processed += 1
        payload = PortfolioProcessedPayload(portfolio=portfolio, positions=positions)
        self._publish(EventType.PORTFOLIO_PROCESSED, payload)
        return payload

    # ── Metrics ─────────────────────────────────────────────────────────────

    def get_quality_metrics(self) -> dict[str, Any]:
        return self._metrics.as_dict()

    def get_latest_quote(self, symbol: str) -> CleanedQuote | None:
        return self._latest_quotes.get(symbol.upper())

    def reset_daily_metrics(self) -> None:
        logger.info(f"Daily ingestion metrics archived: {self._metrics.as_dict()}")
        self._metrics = QualityMetrics(last_reset=self._clock.now())

    # ── Bus handlers ────────────────────────────────────────────────────────

    def _on_feed(self, event: Event) -> None:
        self.ingest_feed(event.payload.feed)

    def _on_csv(self, event: Event) -> None:
        self.process_csv(event.payload.rows, event.payload.source)

    def _on_broker_snapshot(self, event: Event) -> None:
        self.process_broker_snapshot(event.payload.snapshot)

    def _publish(self, event_type: EventType, payload: Any) -> None:
        try:
            self._bus.emit(event_type, payload)
        except Exception as e:
            log_exception(logger, e, {"event_type": event_type.value})


def _clean_position(raw: Mapping[str, Any], ts: datetime) -> Position:
    quantity = float(raw.get("quantity", raw.get("qty")))
    avg_price = float(raw.get("averagePrice", raw.get("avg_cost", raw.get("average_price"))))
    current = raw.get("currentPrice", raw.get("current_price"))
    market_value = raw.get("marketValue", raw.get("market_value"))
    unrealized = raw.get("unrealizedPnL", raw.get("unrealized_pnl"))
    if market_value is None:
        market_value = quantity * float(current if current is not None else avg_price)
    if unrealized is None:
        unrealized = (float(current) - avg_price) * quantity if current is not None else 0.0
    try:
        return Position(
            symbol=str(raw["symbol"]),
            quantity=quantity,
            avg_cost=avg_price,
            market_value=float(market_value),
            unrealized_pnl=float(unrealized),
            realized_pnl=float(raw.get("realizedPnL", raw.get("realized_pnl", 0.0))),
            updated_ts=ts,
        )
    except ValidationError as e:
        raise ValueError(str(e)) from e


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _freshness(age_seconds: float) -> Freshness:
    if age_seconds <= LIVE_SECONDS:
        return "live"
    if age_seconds <= WARM_SECONDS:
        return "warm"
    return "stale"


def _source_of(feed: Any) -> str:
    if isinstance(feed, Mapping):
        return str(feed.get("source") or "unknown")
    return "unknown"
