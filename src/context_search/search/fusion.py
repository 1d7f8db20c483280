"""
Score normalization and weighted fusion of retrieval result sets.

Normalization is relative to the current candidate batch: each dimension is
divided by its largest observed raw score, so weights only compare scores
within one retrieval call.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

from ..errors import RetrievalValidationError


@dataclass(frozen=True)
class Weights:
    """Fusion weights; they need not sum to 1."""

    fulltext: float = 0.5
    semantic: float = 0.5
    distance: float = 1.0

    def validate(self) -> None:
        for name in ("fulltext", "semantic", "distance"):
            value = getattr(self, name)
            if (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or not math.isfinite(value)
                or value < 0
            ):
                raise RetrievalValidationError(
                    f"{name} weight must be a finite non-negative number, got {value!r}",
                    field=f"{name}_weight",
                )


@dataclass(frozen=True)
class Candidate:
    """Union of vector and text rows for one record."""

    id: str
    title: str
    body: str
    instruction: str | None = None
    updated_at: datetime | None = None
    vec_score: float | None = None
    fts_score: float | None = None
    distance_km: float | None = None


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score: float
    text_score: float
    vec_norm: float
    fts_norm: float
    distance_norm: float | None = None


def _row_candidate(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "title": str(row.get("title") or ""),
        "body": str(row.get("body") or ""),
        "instruction": row.get("instruction"),
        "updated_at": row.get("updated_at"),
        "vec_score": None,
        "fts_score": None,
        "distance_km": row.get("distance_km"),
    }


def merge_candidates(
    vector_rows: Iterable[dict[str, Any]],
    text_rows: Iterable[dict[str, Any]],
) -> list[Candidate]:
    """Key both result sets by id; vector rows keep their order first."""
    merged: dict[str, dict[str, Any]] = {}

    for row in vector_rows:
        entry = merged.setdefault(str(row["id"]), _row_candidate(row))
        score = row.get("vec_score")
        if score is not None and (entry["vec_score"] is None or score > entry["vec_score"]):
            entry["vec_score"] = float(score)

    for row in text_rows:
        entry = merged.setdefault(str(row["id"]), _row_candidate(row))
        score = row.get("fts_score")
        if score is not None and (entry["fts_score"] is None or score > entry["fts_score"]):
            entry["fts_score"] = float(score)
        if entry["distance_km"] is None and row.get("distance_km") is not None:
            entry["distance_km"] = float(row["distance_km"])

    return [Candidate(**entry) for entry in merged.values()]


def normalize(raw: float | None, maximum: float) -> float:
    """``raw / maximum`` clamped to [0, 1]; 0 when either is missing or non-positive."""
    if raw is None or maximum <= 0:
        return 0.0
    return min(1.0, max(0.0, raw / maximum))


def distance_norm(distance_km: float | None, max_km: float) -> float:
    """1 at the origin, falling linearly to 0 at the radius."""
    if distance_km is None:
        return 0.0
    return max(0.0, 1.0 - min(distance_km, max_km) / max(1e-6, max_km))


def _weighted(pairs: Sequence[tuple[float, float]]) -> float:
    denominator = sum(weight for weight, _ in pairs) or 1.0
    return sum(weight * value for weight, value in pairs) / denominator


class ScoreFusionEngine:
    """Combine vector, text and optional distance scores into one ranking."""

    def score(
        self,
        candidates: Sequence[Candidate],
        weights: Weights,
        *,
        max_distance_km: float | None = None,
    ) -> list[ScoredCandidate]:
        """Score every candidate, keeping input order.

        ``text_score`` fuses only the vector and text dimensions. With
        ``max_distance_km`` set, ``score`` also includes proximity.
        """
        max_vec = max((c.vec_score for c in candidates if c.vec_score is not None), default=0.0)
        max_fts = max((c.fts_score for c in candidates if c.fts_score is not None), default=0.0)

        scored: list[ScoredCandidate] = []
        for candidate in candidates:
            vec_norm = normalize(candidate.vec_score, max_vec)
            fts_norm = normalize(candidate.fts_score, max_fts)
            text_pairs = [(weights.semantic, vec_norm), (weights.fulltext, fts_norm)]
            text_score = _weighted(text_pairs)

            if max_distance_km is None:
                scored.append(
                    ScoredCandidate(
                        candidate=candidate,
                        score=text_score,
                        text_score=text_score,
                        vec_norm=vec_norm,
                        fts_norm=fts_norm,
                    )
                )
                continue

            dist_norm = distance_norm(candidate.distance_km, max_distance_km)
            scored.append(
                ScoredCandidate(
                    candidate=candidate,
                    score=_weighted([*text_pairs, (weights.distance, dist_norm)]),
                    text_score=text_score,
                    vec_norm=vec_norm,
                    fts_norm=fts_norm,
                    distance_norm=dist_norm,
                )
            )
        return scored

    def fuse(
        self,
        candidates: Sequence[Candidate],
        weights: Weights,
        *,
        min_score: float = 0.0,
        top_k: int | None = None,
        max_distance_km: float | None = None,
    ) -> list[ScoredCandidate]:
        """Score, drop below ``min_score``, sort descending, truncate to ``top_k``.

        The threshold applies to ``text_score`` even when distance is part of
        the ranking score, so proximity is never gated by relevance.
        """
        scored = self.score(candidates, weights, max_distance_km=max_distance_km)
        kept = [item for item in scored if item.text_score >= min_score]
        ordered = sorted(kept, key=lambda item: -item.score)
        if top_k is None:
            return ordered
        return ordered[: max(top_k, 0)]


@dataclass(frozen=True)
class Hit:
    """Ranked retrieval result returned to callers."""

    id: str
    title: str
    body: str
    instruction: str | None
    score: float
    distance_km: float | None = None

    @classmethod
    def from_scored(cls, scored: ScoredCandidate) -> Hit:
        candidate = scored.candidate
        return cls(
            id=candidate.id,
            title=candidate.title,
            body=candidate.body,
            instruction=candidate.instruction,
            score=scored.score,
            distance_km=candidate.distance_km,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any], score: float) -> Hit:
        distance = row.get("distance_km")
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            body=str(row.get("body") or ""),
            instruction=row.get("instruction"),
            score=score,
            distance_km=float(distance) if distance is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "instruction": self.instruction,
            "score": self.score,
        }
        if self.distance_km is not None:
            payload["distance_km"] = self.distance_km
        return payload
