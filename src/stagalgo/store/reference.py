"""Static reference tables: betas, average daily volume, spreads, sectors, names.

These are placeholders until a market-data vendor feed is wired in. They live
in one place so a real source can replace ``ReferenceData`` without touching
the calculators that read it.
"""

from datetime import datetime, timedelta
from typing import Any

from stagalgo.core.types import RefSymbol

DEFAULT_BETA = 1.0
DEFAULT_ADV = 10_000_000.0
DEFAULT_SPREAD = 0.05
DEFAULT_SECTOR = "Unknown"

BETAS: dict[str, float] = {
    "AAPL": 1.2,
    "MSFT": 0.9,
    "GOOGL": 1.1,
    "AMZN": 1.3,
    "TSLA": 2.0,
    "JNJ": 0.7,
    "JPM": 1.1,
    "SPY": 1.0,
}

AVERAGE_DAILY_VOLUME: dict[str, float] = {
    "AAPL": 50_000_000.0,
    "MSFT": 30_000_000.0,
    "GOOGL": 25_000_000.0,
    "AMZN": 35_000_000.0,
    "TSLA": 40_000_000.0,
    "JNJ": 15_000_000.0,
    "JPM": 20_000_000.0,
}

# Quoted spread in dollars.
SPREADS: dict[str, float] = {
    "AAPL": 0.01,
    "MSFT": 0.01,
    "GOOGL": 0.02,
    "AMZN": 0.02,
    "TSLA": 0.03,
    "JNJ": 0.02,
    "JPM": 0.02,
}

SECTORS: dict[str, str] = {
    "AAPL": "Technology",
    "GOOGL": "Technology",
    "MSFT": "Technology",
    "NVDA": "Technology",
    "AMD": "Technology",
    "INTC": "Technology",
    "TSLA": "Consumer Discretionary",
    "NFLX": "Consumer Discretionary",
    "AMZN": "Consumer Discretionary",
    "META": "Communication",
    "JPM": "Financial",
    "BAC": "Financial",
    "WFC": "Financial",
    "JNJ": "Healthcare",
    "PFE": "Healthcare",
    "UNH": "Healthcare",
    "SPY": "Broad Market",
}

NAMES: dict[str, str] = {
    "AAPL": "Apple Inc.",
    "GOOGL": "Alphabet Inc.",
    "MSFT": "Microsoft Corp.",
    "TSLA": "Tesla Inc.",
    "NVDA": "NVIDIA Corp.",
    "AMD": "Advanced Micro Devices",
    "INTC": "Intel Corp.",
    "AMZN": "Amazon.com Inc.",
    "META": "Meta Platforms Inc.",
    "NFLX": "Netflix Inc.",
    "JPM": "JPMorgan Chase",
    "BAC": "Bank of America",
    "WFC": "Wells Fargo",
    "JNJ": "Johnson & Johnson",
    "PFE": "Pfizer Inc.",
    "UNH": "UnitedHealth Group",
    "SPY": "SPDR S&P 500 ETF",
}


class ReferenceData:
    """Lookup facade over the placeholder tables; each table can be overridden."""

    def __init__(
        self,
        betas: dict[str, float] | None = None,
        adv: dict[str, float] | None = None,
        spreads: dict[str, float] | None = None,
        sectors: dict[str, str] | None = None,
        names: dict[str, str] | None = None,
    ) -> None:
        self._betas = dict(BETAS if betas is None else betas)
        self._adv = dict(AVERAGE_DAILY_VOLUME if adv is None else adv)
        self._spreads = dict(SPREADS if spreads is None else spreads)
        self._sectors = dict(SECTORS if sectors is None else sectors)
        self._names = dict(NAMES if names is None else names)

    def beta(self, symbol: str) -> float:
        return self._betas.get(symbol, DEFAULT_BETA)

    def average_daily_volume(self, symbol: str) -> float:
        return self._adv.get(symbol, DEFAULT_ADV)

    def spread(self, symbol: str) -> float:
        return self._spreads.get(symbol, DEFAULT_SPREAD)

    def sector(self, symbol: str) -> str:
        return self._sectors.get(symbol, DEFAULT_SECTOR)

    def name(self, symbol: str) -> str:
        return self._names.get(symbol, symbol)

    def known_symbols(self) -> list[str]:
        return sorted(set(self._sectors) | set(self._names))


def default_ref_symbols() -> list[RefSymbol]:
    return [
        RefSymbol(symbol="AAPL", name="Apple Inc.", exchange="NASDAQ", sector="Technology",
                  industry="Consumer Electronics"),
        RefSymbol(symbol="MSFT", name="Microsoft Corp.", exchange="NASDAQ", sector="Technology",
                  industry="Software"),
        RefSymbol(symbol="GOOGL", name="Alphabet Inc.", exchange="NASDAQ", sector="Technology",
                  industry="Software"),
        RefSymbol(symbol="AMZN", name="Amazon.com Inc.", exchange="NASDAQ",
                  sector="Consumer Discretionary", industry="E-commerce"),
        RefSymbol(symbol="TSLA", name="Tesla Inc.", exchange="NASDAQ",
                  sector="Consumer Discretionary", industry="Automotive"),
        RefSymbol(symbol="JNJ", name="Johnson & Johnson", exchange="NYSE", sector="Healthcare",
                  industry="Pharmaceuticals"),
        RefSymbol(symbol="JPM", name="JPMorgan Chase", exchange="NYSE", sector="Financial",
                  industry="Banking"),
        RefSymbol(symbol="SPY", name="SPDR S&P 500 ETF", exchange="ARCA", asset_type="etf",
                  sector="Broad Market", industry="Index Fund"),
    ]


def default_oracle_signals(now: datetime) -> list[dict[str, Any]]:
    return [
        {
            "id": "orc_seed_aapl_momentum",
            "symbol": "AAPL",
            "signal_type": "momentum",
            "strength": 0.75,
            "direction": "bull",
            "source": "technical_analysis",
            "ts": now - timedelta(hours=2),
            "summary": "Strong upward momentum with volume confirmation",
        },
        {
            "id": "orc_seed_tsla_vol_spike",
            "symbol": "TSLA",
            "signal_type": "vol_spike",
            "strength": 0.85,
            "direction": "neutral",
            "source": "options_flow",
            "ts": now - timedelta(hours=1),
            "summary": "Unusual options activity detected",
        },
        {
            "id": "orc_seed_msft_earnings",
            "symbol": "MSFT",
            "signal_type": "earnings_window",
            "strength": 0.65,
            "direction": "bull",
            "source": "earnings_calendar",
            "ts": now - timedelta(minutes=30),
            "summary": "Approaching earnings with positive sentiment",
        },
    ]


def default_macro_events(now: datetime) -> list[dict[str, Any]]:
    return [
        {"id": "mcr_seed_cpi", "ts": now - timedelta(days=7), "event_type": "CPI",
         "actual": 3.2, "consensus": 3.1, "surprise": 0.1, "impact": "bear"},
        {"id": "mcr_seed_nfp", "ts": now - timedelta(days=14), "event_type": "NFP",
         "actual": 250_000, "consensus": 200_000, "surprise": 50_000, "impact": "bull"},
        {"id": "mcr_seed_fomc", "ts": now - timedelta(days=21), "event_type": "FOMC",
         "actual": 5.25, "consensus": 5.25, "surprise": 0.0, "impact": "neutral"},
    ]


def default_geo_events(now: datetime) -> list[dict[str, Any]]:
    return [
        {"id": "geo_seed_sanctions", "ts": now - timedelta(days=30), "region": "Europe",
         "event_type": "sanctions", "severity": 3, "affected_assets": ["XOM", "CVX"],
         "impact_dir": "bull", "confidence": 0.8},
        {"id": "geo_seed_opec", "ts": now - timedelta(days=60), "region": "OPEC+",
         "event_type": "production_cut", "severity": 2,
         "affected_assets": ["XOM", "CVX", "Energy"], "impact_dir": "bull", "confidence": 0.9},
    ]
