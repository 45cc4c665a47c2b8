"""Market search, saved-search alerts and recommendations."""

from stagalgo.search.service import (
    MarketSearchService,
    Recommendation,
    SavedSearch,
    SearchAlert,
    SearchFilters,
    SearchMode,
    SearchResult,
)

__all__ = [
    "MarketSearchService",
    "Recommendation",
    "SavedSearch",
    "SearchAlert",
    "SearchFilters",
    "SearchMode",
    "SearchResult",
]
