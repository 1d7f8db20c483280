"""Corpus stores for context retrieval."""

from .base import CategoryRecord, ContextRecord, CorpusStore
from .duckdb import DuckDBCorpusStore
from .predicates import GeoQuery, QueryScope, RetrievalFilters

__all__ = [
    "CategoryRecord",
    "ContextRecord",
    "CorpusStore",
    "DuckDBCorpusStore",
    "GeoQuery",
    "QueryScope",
    "RetrievalFilters",
]
