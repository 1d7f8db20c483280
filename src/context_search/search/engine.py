"""
Public retrieval surface: tenant-scoped context and place search.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace
from typing import Any

from ..embeddings import EmbeddingOptions, EmbeddingProvider, EmbeddingResult
from ..errors import RetrievalValidationError
from ..storage.base import CorpusStore
from ..storage.predicates import QueryScope, RetrievalFilters
from .cascade import DEFAULT_CANDIDATE_FLOOR, CascadeTier, FallbackCascade, candidate_limit
from .fusion import Hit, ScoreFusionEngine, Weights
from .geo import GeoRanker, validate_geo_query

MIN_TOP_K = 1
MAX_TOP_K = 20
DEFAULT_TOP_K = 3
DEFAULT_MIN_SCORE = 0.5
PLACE_TYPE = "place"


@dataclass(frozen=True)
class RetrievalResponse:
    """Hits plus the tier and embedding call that produced them."""

    hits: list[Hit]
    tier: CascadeTier
    embedding: EmbeddingResult

    @property
    def embedding_provider(self) -> str:
        return self.embedding.provider

    @property
    def embedding_model(self) -> str:
        return self.embedding.model

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": [hit.to_dict() for hit in self.hits],
            "tier": self.tier.value,
            "embedding_provider": self.embedding.provider,
            "embedding_model": self.embedding.model,
            "embedding_usage": asdict(self.embedding.usage),
            "embedding_latency_ms": self.embedding.latency_ms,
            "embedding_cost": asdict(self.embedding.cost),
            "embedding_usage_id": self.embedding.usage_id,
        }


def _validate_request(query_text: Any, top_k: Any, min_score: Any, weights: Weights) -> None:
    if not isinstance(query_text, str) or not query_text.strip():
        raise RetrievalValidationError("query text must be a non-empty string", field="query")
    if isinstance(top_k, bool) or not isinstance(top_k, int) or not MIN_TOP_K <= top_k <= MAX_TOP_K:
        raise RetrievalValidationError(
            f"top_k must be an integer in [{MIN_TOP_K}, {MAX_TOP_K}], got {top_k!r}",
            field="top_k",
        )
    if (
        isinstance(min_score, bool)
        or not isinstance(min_score, (int, float))
        or math.isnan(min_score)
        or not 0.0 <= min_score <= 1.0
    ):
        raise RetrievalValidationError(
            f"min_score must be a number in [0, 1], got {min_score!r}", field="min_score"
        )
    weights.validate()


class RetrievalEngine:
    """Embed a query once, then rank tenant contexts or places.

    Validation happens before any embedding or store call.
    """

    def __init__(
        self,
        store: CorpusStore,
        embedding_provider: EmbeddingProvider | None = None,
        *,
        fusion: ScoreFusionEngine | None = None,
        candidate_floor: int = DEFAULT_CANDIDATE_FLOOR,
        place_type: str = PLACE_TYPE,
    ) -> None:
        self.store = store
        self.embedding_provider = embedding_provider or EmbeddingProvider()
        self.fusion = fusion or ScoreFusionEngine()
        self.cascade = FallbackCascade(store, self.fusion, candidate_floor=candidate_floor)
        self.geo_ranker = GeoRanker(self.fusion)
        self.candidate_floor = candidate_floor
        self.place_type = place_type

    def retrieve(
        self,
        tenant_id: str,
        query_text: str,
        filters: RetrievalFilters | None = None,
        *,
        top_k: int = DEFAULT_TOP_K,
        weights: Weights | None = None,
        min_score: float = DEFAULT_MIN_SCORE,
        embedding_options: EmbeddingOptions | None = None,
    ) -> RetrievalResponse:
        weights = weights or Weights()
        _validate_request(query_text, top_k, min_score, weights)
        scope = QueryScope(tenant_id=tenant_id, filters=filters or RetrievalFilters())

        embedding = self._embed(tenant_id, query_text, embedding_options)
        result = self.cascade.retrieve(
            scope,
            query_text,
            embedding.vector,
            weights=weights,
            min_score=min_score,
            top_k=top_k,
        )
        return RetrievalResponse(hits=result.hits, tier=result.tier, embedding=embedding)

    def retrieve_places(
        self,
        tenant_id: str,
        query_text: str,
        *,
        latitude: float,
        longitude: float,
        max_distance_km: float = 5.0,
        filters: RetrievalFilters | None = None,
        top_k: int = DEFAULT_TOP_K,
        weights: Weights | None = None,
        min_score: float = DEFAULT_MIN_SCORE,
        embedding_options: EmbeddingOptions | None = None,
    ) -> RetrievalResponse:
        """Rank places inside a hard radius; never widens the radius."""
        weights = weights or Weights()
        _validate_request(query_text, top_k, min_score, weights)
        geo = validate_geo_query(latitude, longitude, max_distance_km)
        scope = QueryScope(
            tenant_id=tenant_id,
            filters=filters or RetrievalFilters(),
            context_type=self.place_type,
            geo=geo,
        )

        embedding = self._embed(tenant_id, query_text, embedding_options)
        candidates = self.cascade.hybrid_candidates(
            scope,
            query_text,
            embedding.vector,
            candidate_limit(top_k, self.candidate_floor),
        )
        ranking = self.geo_ranker.rank(
            candidates, weights, geo, min_score=min_score, top_k=top_k
        )

        if ranking.by_distance:
            tier = CascadeTier.PROXIMITY
        elif ranking.results:
            tier = CascadeTier.HYBRID
        else:
            tier = CascadeTier.NONE
        hits = [Hit.from_scored(item) for item in ranking.results]
        return RetrievalResponse(hits=hits, tier=tier, embedding=embedding)

    def _embed(
        self,
        tenant_id: str,
        query_text: str,
        options: EmbeddingOptions | None,
    ) -> EmbeddingResult:
        opts = options or EmbeddingOptions()
        opts = replace(opts, metadata={**opts.metadata, "tenant_id": tenant_id})
        return self.embedding_provider.embed_query(query_text, options=opts)
