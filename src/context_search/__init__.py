"""
context-search - hybrid retrieval over multi-tenant knowledge contexts.

Fuses vector similarity, full-text rank and (for places) proximity into a
single ranking, and escalates through substring, n-gram and recency
fallbacks so a query returns something whenever matching data exists.

Example usage:
    >>> from context_search import DuckDBCorpusStore, RetrievalEngine
    >>> engine = RetrievalEngine(DuckDBCorpusStore("corpus.duckdb"))
    >>> response = engine.retrieve("tenant-a", "opening hours")
    >>> [hit.title for hit in response.hits]
"""

from .embeddings import EmbeddingOptions, EmbeddingProvider, EmbeddingResult, resize_vector
from .errors import (
    EmbeddingProviderError,
    FilterParseError,
    RetrievalError,
    RetrievalValidationError,
)
from .search import CascadeTier, Hit, RetrievalEngine, RetrievalResponse, Weights
from .storage import (
    CategoryRecord,
    ContextRecord,
    CorpusStore,
    DuckDBCorpusStore,
    GeoQuery,
    QueryScope,
    RetrievalFilters,
)
from .usage import PricingEntry, PricingTable, UsageAccountant, UsageNotifier, UsageRecord

__all__ = [
    # Embeddings
    "EmbeddingOptions",
    "EmbeddingProvider",
    "EmbeddingResult",
    "resize_vector",
    # Errors
    "EmbeddingProviderError",
    "FilterParseError",
    "RetrievalError",
    "RetrievalValidationError",
    # Retrieval
    "CascadeTier",
    "Hit",
    "RetrievalEngine",
    "RetrievalResponse",
    "Weights",
    # Storage
    "CategoryRecord",
    "ContextRecord",
    "CorpusStore",
    "DuckDBCorpusStore",
    "GeoQuery",
    "QueryScope",
    "RetrievalFilters",
    # Usage
    "PricingEntry",
    "PricingTable",
    "UsageAccountant",
    "UsageNotifier",
    "UsageRecord",
]
