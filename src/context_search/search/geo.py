"""
Geographic validation and proximity-aware ranking for place search.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from ..errors import RetrievalValidationError
from ..storage.predicates import EARTH_RADIUS_KM, MIN_RADIUS_KM, GeoQuery
from .fusion import Candidate, ScoredCandidate, ScoreFusionEngine, Weights


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def _finite(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_geo_query(latitude: float, longitude: float, max_km: float = 5.0) -> GeoQuery:
    """Build a ``GeoQuery``, rejecting malformed coordinates before any query runs."""
    if not _finite(latitude) or not -90.0 <= latitude <= 90.0:
        raise RetrievalValidationError(
            f"latitude must be a number in [-90, 90], got {latitude!r}", field="lat"
        )
    if not _finite(longitude) or not -180.0 <= longitude <= 180.0:
        raise RetrievalValidationError(
            f"longitude must be a number in [-180, 180], got {longitude!r}", field="long"
        )
    if not _finite(max_km) or max_km < 0:
        raise RetrievalValidationError(
            f"max_distance_km must be a non-negative number, got {max_km!r}",
            field="max_distance_km",
        )
    return GeoQuery(latitude=float(latitude), longitude=float(longitude), max_km=float(max_km))


def search_radius_km(geo: GeoQuery) -> float:
    return max(MIN_RADIUS_KM, geo.max_km)


@dataclass(frozen=True)
class GeoRanking:
    results: list[ScoredCandidate]
    by_distance: bool = False


class GeoRanker:
    """Rank radius-bound candidates by relevance and proximity.

    When no candidate clears ``min_score``, every candidate inside the
    radius is returned nearest first instead.
    """

    def __init__(self, fusion: ScoreFusionEngine | None = None) -> None:
        self.fusion = fusion or ScoreFusionEngine()

    def rank(
        self,
        candidates: Sequence[Candidate],
        weights: Weights,
        geo: GeoQuery,
        *,
        min_score: float,
        top_k: int,
    ) -> GeoRanking:
        radius = search_radius_km(geo)
        in_radius = [
            candidate
            for candidate in candidates
            if candidate.distance_km is not None and candidate.distance_km <= radius
        ]
        fused = self.fusion.fuse(
            in_radius,
            weights,
            min_score=min_score,
            top_k=top_k,
            max_distance_km=geo.max_km,
        )
        if fused or not in_radius:
            return GeoRanking(results=fused)

        scored = self.fusion.score(in_radius, weights, max_distance_km=geo.max_km)
        nearest = sorted(scored, key=lambda item: (item.candidate.distance_km, -item.score))
        return GeoRanking(results=nearest[: max(top_k, 0)], by_distance=True)
