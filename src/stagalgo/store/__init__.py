"""In-memory market/portfolio truth store."""

from stagalgo.store.market_store import MarketStore, PortfolioState
from stagalgo.store.reference import ReferenceData

__all__ = ["MarketStore", "PortfolioState", "ReferenceData"]
