"""
Four-tier retrieval cascade.

Tiers run strictly in order and the first one that produces a hit wins:
hybrid fusion, substring match, n-gram match, most recent records. A tier
whose store query raises counts as a tier with zero hits.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

from ..storage.base import CorpusStore
from ..storage.predicates import QueryScope
from .fusion import Candidate, Hit, ScoreFusionEngine, Weights, merge_candidates
from .ngrams import generate_ngrams

logger = logging.getLogger(__name__)

SUBSTRING_SCORE = 1.0
NGRAM_SCORE = 1.0
RECENCY_SCORE = 0.5
DEFAULT_CANDIDATE_FLOOR = 10


class CascadeTier(str, Enum):
    HYBRID = "hybrid"
    PROXIMITY = "proximity"
    SUBSTRING = "substring"
    NGRAM = "ngram"
    RECENCY = "recency"
    NONE = "none"


@dataclass(frozen=True)
class CascadeResult:
    hits: list[Hit]
    tier: CascadeTier


def candidate_limit(top_k: int, floor: int = DEFAULT_CANDIDATE_FLOOR) -> int:
    """Row limit for each hybrid query: ``max(2 * floor, 2 * top_k)``."""
    return max(2 * floor, 2 * top_k)


class FallbackCascade:
    """Run hybrid search and escalate through the fallback tiers."""

    def __init__(
        self,
        store: CorpusStore,
        fusion: ScoreFusionEngine | None = None,
        *,
        candidate_floor: int = DEFAULT_CANDIDATE_FLOOR,
    ) -> None:
        self.store = store
        self.fusion = fusion or ScoreFusionEngine()
        self.candidate_floor = candidate_floor

    def retrieve(
        self,
        scope: QueryScope,
        query_text: str,
        query_vector: Sequence[float],
        *,
        weights: Weights,
        min_score: float,
        top_k: int,
    ) -> CascadeResult:
        tiers: list[tuple[CascadeTier, Callable[[], list[Hit]]]] = [
            (
                CascadeTier.HYBRID,
                lambda: self._hybrid(scope, query_text, query_vector, weights, min_score, top_k),
            ),
            (CascadeTier.SUBSTRING, lambda: self._substring(scope, query_text, top_k)),
            (CascadeTier.NGRAM, lambda: self._ngram(scope, query_text, top_k)),
            (CascadeTier.RECENCY, lambda: self._recency(scope, top_k)),
        ]
        for tier, run in tiers:
            hits = self._run_tier(tier, run)
            if hits:
                logger.debug("Tier %s produced %d hits for tenant %s", tier.value, len(hits), scope.tenant_id)
                return CascadeResult(hits=hits, tier=tier)

        logger.debug("No tier produced hits for tenant %s", scope.tenant_id)
        return CascadeResult(hits=[], tier=CascadeTier.NONE)

    def hybrid_candidates(
        self,
        scope: QueryScope,
        query_text: str,
        query_vector: Sequence[float],
        limit: int,
    ) -> list[Candidate]:
        """Vector and text queries issued in parallel and merged by id.

        Either query failing leaves the other's rows usable.
        """
        with ThreadPoolExecutor(max_workers=2) as executor:
            vector_future = executor.submit(self.store.vector_query, scope, query_vector, limit)
            text_future = executor.submit(self.store.text_query, scope, query_text, limit)
            vector_rows = self._rows_or_empty("vector", vector_future)
            text_rows = self._rows_or_empty("text", text_future)
        return merge_candidates(vector_rows, text_rows)

    def _hybrid(
        self,
        scope: QueryScope,
        query_text: str,
        query_vector: Sequence[float],
        weights: Weights,
        min_score: float,
        top_k: int,
    ) -> list[Hit]:
        limit = candidate_limit(top_k, self.candidate_floor)
        candidates = self.hybrid_candidates(scope, query_text, query_vector, limit)
        fused = self.fusion.fuse(candidates, weights, min_score=min_score, top_k=top_k)
        return [Hit.from_scored(item) for item in fused]

    def _substring(self, scope: QueryScope, query_text: str, top_k: int) -> list[Hit]:
        term = query_text.strip()
        if not term:
            return []
        rows = self.store.substring_query(scope, [term], top_k)
        return [Hit.from_row(row, SUBSTRING_SCORE) for row in rows]

    def _ngram(self, scope: QueryScope, query_text: str, top_k: int) -> list[Hit]:
        grams = generate_ngrams(query_text)
        if not grams:
            return []
        rows = self.store.substring_query(scope, grams, top_k)
        return [Hit.from_row(row, NGRAM_SCORE) for row in rows]

    def _recency(self, scope: QueryScope, top_k: int) -> list[Hit]:
        rows = self.store.recency_query(scope, top_k)
        return [Hit.from_row(row, RECENCY_SCORE) for row in rows]

    @staticmethod
    def _run_tier(tier: CascadeTier, run: Callable[[], list[Hit]]) -> list[Hit]:
        try:
            return run()
        except Exception as exc:
            logger.warning("Retrieval tier %s failed, treating as no hits: %s", tier.value, exc)
            return []

    @staticmethod
    def _rows_or_empty(kind: str, future: Future[list[dict[str, Any]]]) -> list[dict[str, Any]]:
        try:
            return future.result()
        except Exception as exc:
            logger.warning("%s query failed, continuing without it: %s", kind.capitalize(), exc)
            return []
