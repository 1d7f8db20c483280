"""
Corpus store interface and record types consumed by the retrieval engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, Sequence

from .predicates import QueryScope


@dataclass(frozen=True)
class ContextRecord:
    """A tenant-scoped knowledge record."""

    id: str
    tenant_id: str
    title: str
    body: str
    instruction: str | None = None
    type: str = "text"
    keywords: list[str] = field(default_factory=list)
    embedding: list[float] | None = None
    latitude: float | None = None
    longitude: float | None = None
    intent_scopes: list[str] = field(default_factory=list)
    intent_actions: list[str] = field(default_factory=list)
    category_ids: list[str] = field(default_factory=list)
    status: str = "active"
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CategoryRecord:
    id: str
    tenant_id: str
    slug: str
    name: str


class CorpusStore(Protocol):
    """Read interface over the tenant-scoped record set.

    Every method receives a ``QueryScope`` whose predicates (tenant first)
    must all hold for each returned row. Rows are dicts with at least
    ``id``, ``title``, ``body``, ``instruction`` and ``updated_at``; when the
    scope carries a geo query they also carry ``distance_km``.
    """

    def vector_query(
        self,
        scope: QueryScope,
        query_vector: Sequence[float],
        limit: int,
    ) -> list[dict[str, Any]]:
        """Rows with embeddings, best cosine similarity first, as ``vec_score``."""

    def text_query(
        self,
        scope: QueryScope,
        query_text: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Rows with a positive full-text rank, best first, as ``fts_score``."""

    def substring_query(
        self,
        scope: QueryScope,
        terms: Sequence[str],
        limit: int,
    ) -> list[dict[str, Any]]:
        """Rows whose title or body contains any term, most recently updated first."""

    def recency_query(
        self,
        scope: QueryScope,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Most recently updated rows in scope."""
