"""RAG search contract v1: request, result, metadata and response types."""

from src.contracts.rag_search_v1 import (
    AccessLevel,
    AmountRange,
    DateRange,
    Filters,
    Identity,
    QueryIntent,
    RoutingStrategy,
    SearchMetadata,
    SearchRequest,
    SearchResponse,
    SmartSuggestions,
    SourceType,
    TemporalIntent,
    UnifiedSearchResult,
)

__all__ = [
    "AccessLevel",
    "AmountRange",
    "DateRange",
    "Filters",
    "Identity",
    "QueryIntent",
    "RoutingStrategy",
    "SearchMetadata",
    "SearchRequest",
    "SearchResponse",
    "SmartSuggestions",
    "SourceType",
    "TemporalIntent",
    "UnifiedSearchResult",
]
