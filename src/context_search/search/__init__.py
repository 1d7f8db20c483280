"""Hybrid retrieval over tenant-scoped contexts."""

from .cascade import CascadeResult, CascadeTier, FallbackCascade
from .engine import RetrievalEngine, RetrievalResponse
from .filters import parse_retrieval_filters, supported_filter_syntax
from .fusion import Candidate, Hit, ScoreFusionEngine, Weights, merge_candidates
from .geo import GeoRanker, haversine_km, validate_geo_query
from .ngrams import generate_ngrams

__all__ = [
    "CascadeResult",
    "CascadeTier",
    "FallbackCascade",
    "RetrievalEngine",
    "RetrievalResponse",
    "parse_retrieval_filters",
    "supported_filter_syntax",
    "Candidate",
    "Hit",
    "ScoreFusionEngine",
    "Weights",
    "merge_candidates",
    "GeoRanker",
    "haversine_km",
    "validate_geo_query",
    "generate_ngrams",
]
