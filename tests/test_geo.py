"""Tests for geographic validation and proximity-aware ranking."""

from __future__ import annotations

import math

import pytest

from context_search.errors import RetrievalValidationError
from context_search.search.fusion import Candidate, Weights
from context_search.search.geo import GeoRanker, haversine_km, validate_geo_query
from context_search.storage.predicates import GeoQuery

ORIGIN = GeoQuery(latitude=13.7563, longitude=100.5018, max_km=5.0)


def _place(doc_id: str, distance_km: float, vec_score: float | None = None, fts_score: float | None = None) -> Candidate:
    return Candidate(
        id=doc_id,
        title=doc_id,
        body="",
        vec_score=vec_score,
        fts_score=fts_score,
        distance_km=distance_km,
    )


def test_haversine_known_distances() -> None:
    assert haversine_km(13.7563, 100.5018, 13.7563, 100.5018) == 0.0
    assert haversine_km(0.0, 0.0, 0.0, 1.0) == pytest.approx(2 * math.pi * 6371 / 360, rel=1e-6)
    assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(haversine_km(1.0, 0.0, 0.0, 0.0))


def test_validate_geo_query_accepts_valid_coordinates() -> None:
    assert validate_geo_query(13.7563, 100.5018, 3) == GeoQuery(13.7563, 100.5018, 3.0)
    assert validate_geo_query(-90, 180, 0).max_km == 0.0


@pytest.mark.parametrize(
    ("latitude", "longitude", "max_km", "field"),
    [
        (90.5, 0.0, 5.0, "lat"),
        (float("nan"), 0.0, 5.0, "lat"),
        (True, 0.0, 5.0, "lat"),
        (0.0, -180.5, 5.0, "long"),
        (0.0, float("inf"), 5.0, "long"),
        (0.0, 0.0, -1.0, "max_distance_km"),
        (0.0, 0.0, float("nan"), "max_distance_km"),
    ],
)
def test_validate_geo_query_rejects_malformed_input(
    latitude: float, longitude: float, max_km: float, field: str
) -> None:
    with pytest.raises(RetrievalValidationError) as excinfo:
        validate_geo_query(latitude, longitude, max_km)
    assert excinfo.value.field == field


def test_min_score_applies_to_text_score_only() -> None:
    near = _place("near", 0.5, vec_score=0.2)
    relevant = _place("relevant", 4.0, vec_score=1.0, fts_score=1.0)
    ranker = GeoRanker()

    scores = {item.candidate.id: item for item in ranker.fusion.score([near, relevant], Weights(), max_distance_km=5.0)}
    # near: text (0.5 * 0.2) / 1 = 0.1, full (0.1 + 0.9) / 2 = 0.5
    assert scores["near"].score == pytest.approx(0.5)
    assert scores["near"].text_score == pytest.approx(0.1)

    ranking = ranker.rank([near, relevant], Weights(), ORIGIN, min_score=0.5, top_k=3)

    assert [item.candidate.id for item in ranking.results] == ["relevant"]
    assert not ranking.by_distance


def test_falls_back_to_nearest_when_nothing_clears_min_score() -> None:
    candidates = [
        _place("c", 3.0, vec_score=0.5),
        _place("d", 1.0, vec_score=0.4),
        _place("e", 1.0, vec_score=0.45),
    ]

    ranking = GeoRanker().rank(candidates, Weights(), ORIGIN, min_score=0.9, top_k=3)

    assert ranking.by_distance
    # d and e tie on distance; e has the higher fused score.
    assert [item.candidate.id for item in ranking.results] == ["e", "d", "c"]


def test_nearest_fallback_respects_top_k() -> None:
    candidates = [_place(str(i), float(i) / 2) for i in range(6)]

    ranking = GeoRanker().rank(candidates, Weights(), ORIGIN, min_score=0.9, top_k=2)

    assert [item.candidate.id for item in ranking.results] == ["0", "1"]


def test_radius_is_a_hard_cutoff() -> None:
    candidates = [
        _place("inside", 4.9, vec_score=0.1),
        _place("outside", 7.0, vec_score=1.0, fts_score=1.0),
    ]

    ranked = GeoRanker().rank(candidates, Weights(), ORIGIN, min_score=0.0, top_k=3)
    fallback = GeoRanker().rank(candidates, Weights(), ORIGIN, min_score=0.99, top_k=3)

    assert [item.candidate.id for item in ranked.results] == ["inside"]
    assert [item.candidate.id for item in fallback.results] == ["inside"]


def test_nothing_within_radius_returns_empty() -> None:
    candidates = [_place("ten", 10.0, vec_score=1.0), _place("twenty", 20.0, vec_score=0.9)]

    ranking = GeoRanker().rank(candidates, Weights(), ORIGIN, min_score=0.5, top_k=3)

    assert ranking.results == []
    assert not ranking.by_distance


def test_zero_radius_is_clamped() -> None:
    origin = GeoQuery(latitude=13.7563, longitude=100.5018, max_km=0.0)
    ranking = GeoRanker().rank([_place("here", 0.0)], Weights(), origin, min_score=0.0, top_k=1)
    assert [item.candidate.id for item in ranking.results] == ["here"]
