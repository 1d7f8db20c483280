"""End-to-end retrieval tests: engine, cascade and DuckDB store together."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Sequence

import httpx
import pytest

from context_search.embeddings import EmbeddingOptions, EmbeddingProvider, EmbeddingResult
from context_search.errors import RetrievalValidationError
from context_search.search import CascadeTier, RetrievalEngine, Weights
from context_search.storage import ContextRecord, DuckDBCorpusStore, RetrievalFilters
from context_search.usage import CostSnapshot, TokenUsage, UsageNotifier

TENANT = "tenant-a"
BANGKOK = (13.7563, 100.5018)


class StaticProvider:
    """Embedding provider fake returning a fixed vector."""

    def __init__(self, vector: Sequence[float]) -> None:
        self.vector = list(vector)
        self.calls: list[tuple[str, EmbeddingOptions | None]] = []

    def embed_query(self, query: str, *, options: EmbeddingOptions | None = None) -> EmbeddingResult:
        self.calls.append((query, options))
        return EmbeddingResult(
            vector=list(self.vector),
            dimension=len(self.vector),
            model="static",
            provider="static",
            usage=TokenUsage(input_tokens=1, total_tokens=1),
            latency_ms=0,
            cost=CostSnapshot(),
        )


class _ExplodingStore:
    def __getattr__(self, name: str) -> Any:
        raise AssertionError(f"store.{name} must not be called")


class _ExplodingProvider:
    def embed_query(self, query: str, *, options: EmbeddingOptions | None = None) -> EmbeddingResult:
        raise AssertionError("provider must not be called")


def _day(n: int) -> datetime:
    return datetime(2024, 1, 1) + timedelta(days=n)


def _add(store: DuckDBCorpusStore, doc_id: str, title: str, body: str, **extra: Any) -> None:
    extra.setdefault("updated_at", _day(len(doc_id)))
    store.upsert_context(ContextRecord(id=doc_id, tenant_id=TENANT, title=title, body=body, **extra))


def _ids(response) -> list[str]:
    return [hit.id for hit in response.hits]


def test_semantic_weight_ranks_semantic_match_first(store: DuckDBCorpusStore) -> None:
    _add(store, "s1", "Sunset viewpoint", "Watch the evening sky", embedding=[1.0, 0.0, 0.0, 0.0])
    _add(store, "s2", "Rooftop bar", "Drinks upstairs", embedding=[0.1, 1.0, 0.0, 0.0])
    _add(store, "s3", "Parking", "Behind the building", embedding=[0.0, 0.0, 1.0, 0.0])
    engine = RetrievalEngine(store, StaticProvider([1.0, 0.0, 0.0, 0.0]))

    semantic = engine.retrieve(
        TENANT, "rooftop bar", weights=Weights(fulltext=0.0, semantic=1.0), min_score=0.0
    )
    lexical = engine.retrieve(
        TENANT, "rooftop bar", weights=Weights(fulltext=1.0, semantic=0.0), min_score=0.0
    )

    assert semantic.tier is CascadeTier.HYBRID
    assert _ids(semantic)[0] == "s1"
    assert semantic.hits[0].score == pytest.approx(1.0)
    assert _ids(lexical)[0] == "s2"


def test_default_threshold_and_top_k(store: DuckDBCorpusStore) -> None:
    for i in range(5):
        _add(store, f"r{i}", f"Room {i}", "Guest room", embedding=[1.0, 0.0, 0.0, 0.0])
    engine = RetrievalEngine(store, StaticProvider([1.0, 0.0, 0.0, 0.0]))

    response = engine.retrieve(TENANT, "guest room")

    assert response.tier is CascadeTier.HYBRID
    assert len(response.hits) == 3
    assert all(0.5 <= hit.score <= 1.0 for hit in response.hits)


def test_records_without_embeddings_surface_through_substring(store: DuckDBCorpusStore) -> None:
    _add(store, "n1", "Roof garden", "Open on weekends")
    _add(store, "e1", "Lobby", "Reception desk", embedding=[0.0, 1.0, 0.0, 0.0])
    engine = RetrievalEngine(store, StaticProvider([1.0, 0.0, 0.0, 0.0]))

    response = engine.retrieve(TENANT, "roof", min_score=0.6)

    assert response.tier is CascadeTier.SUBSTRING
    assert _ids(response) == ["n1"]
    assert response.hits[0].score == 1.0


def test_thai_query_found_by_ngram_tier(store: DuckDBCorpusStore) -> None:
    _add(store, "th", "ร้านคาเฟ", "Coffee near the river")
    _add(store, "en", "Opening hours", "We open at nine")
    engine = RetrievalEngine(store, EmbeddingProvider())

    response = engine.retrieve(TENANT, "คาเฟ่")

    assert response.tier is CascadeTier.NGRAM
    assert _ids(response) == ["th"]
    assert response.embedding.is_fallback


def test_recency_tier_returns_latest_records(store: DuckDBCorpusStore) -> None:
    _add(store, "old", "Opening hours", "We open at nine", updated_at=_day(0))
    _add(store, "new", "Parking", "Behind the building", updated_at=_day(3))
    engine = RetrievalEngine(store, StaticProvider([0.0, 0.0, 0.0, 0.0]))

    response = engine.retrieve(TENANT, "zzzz qqqq", top_k=1)

    assert response.tier is CascadeTier.RECENCY
    assert _ids(response) == ["new"]
    assert response.hits[0].score == 0.5


def test_empty_tenant_returns_no_hits(store: DuckDBCorpusStore) -> None:
    _add(store, "a1", "Opening hours", "We open at nine")
    engine = RetrievalEngine(store, StaticProvider([1.0, 0.0, 0.0, 0.0]))

    response = engine.retrieve(
        "tenant-x",
        "opening hours",
        RetrievalFilters(intent_scope="support", category="cafe", status="active"),
    )

    assert response.hits == []
    assert response.tier is CascadeTier.NONE
    assert response.to_dict()["hits"] == []


def test_filters_apply_to_fallback_tiers(store: DuckDBCorpusStore) -> None:
    _add(store, "a1", "Opening hours", "We open at nine", intent_scopes=["support"])
    _add(store, "a2", "Opening day", "Grand opening", intent_scopes=["marketing"])
    engine = RetrievalEngine(store, StaticProvider([0.0, 0.0, 0.0, 0.0]))

    response = engine.retrieve(TENANT, "opening", RetrievalFilters(intent_scope="marketing"), min_score=1.0)

    assert response.tier is CascadeTier.SUBSTRING
    assert _ids(response) == ["a2"]


def test_provider_http_error_falls_back_to_hash_vector(store: DuckDBCorpusStore) -> None:
    _add(store, "a1", "Opening hours", "We open at nine")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "unavailable"})

    records: list[Any] = []

    class _Accountant:
        def record(self, record: Any) -> str:
            records.append(record)
            return "usage-1"

    provider = EmbeddingProvider(
        provider="openai",
        api_key="sk-test",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        usage_notifier=UsageNotifier(_Accountant()),
    )
    engine = RetrievalEngine(store, provider)

    response = engine.retrieve(TENANT, "opening hours")

    assert _ids(response) == ["a1"]
    assert response.embedding_provider == "none"
    assert response.embedding.is_fallback
    assert records[0].tenant_id == TENANT
    assert response.to_dict()["embedding_usage_id"] == "usage-1"


def test_query_embedding_carries_tenant_metadata(store: DuckDBCorpusStore) -> None:
    provider = StaticProvider([1.0, 0.0, 0.0, 0.0])
    engine = RetrievalEngine(store, provider)

    engine.retrieve(TENANT, "anything", embedding_options=EmbeddingOptions(metadata={"request": "r-1"}))

    query, options = provider.calls[0]
    assert query == "anything"
    assert options is not None
    assert options.metadata == {"request": "r-1", "tenant_id": TENANT}


def test_response_dict_shape(store: DuckDBCorpusStore) -> None:
    _add(store, "a1", "Opening hours", "We open at nine", instruction="Mention holidays")
    engine = RetrievalEngine(store, StaticProvider([0.0, 0.0, 0.0, 0.0]))

    payload = engine.retrieve(TENANT, "opening hours").to_dict()

    assert set(payload) == {
        "hits",
        "tier",
        "embedding_provider",
        "embedding_model",
        "embedding_usage",
        "embedding_latency_ms",
        "embedding_cost",
        "embedding_usage_id",
    }
    assert payload["tier"] == "hybrid"
    assert payload["hits"][0] == {
        "id": "a1",
        "title": "Opening hours",
        "body": "We open at nine",
        "instruction": "Mention holidays",
        "score": pytest.approx(0.5),
    }


@pytest.mark.parametrize(
    ("kwargs", "field"),
    [
        ({"query_text": ""}, "query"),
        ({"query_text": "   "}, "query"),
        ({"top_k": 0}, "top_k"),
        ({"top_k": 21}, "top_k"),
        ({"top_k": True}, "top_k"),
        ({"top_k": 2.5}, "top_k"),
        ({"min_score": 1.5}, "min_score"),
        ({"min_score": -0.1}, "min_score"),
        ({"min_score": float("nan")}, "min_score"),
        ({"weights": Weights(fulltext=-1.0)}, "fulltext_weight"),
        ({"weights": Weights(semantic=float("nan"))}, "semantic_weight"),
    ],
)
def test_invalid_requests_fail_before_any_io(kwargs: dict[str, Any], field: str) -> None:
    engine = RetrievalEngine(_ExplodingStore(), _ExplodingProvider())
    kwargs = dict(kwargs)
    query_text = kwargs.pop("query_text", "opening hours")

    with pytest.raises(RetrievalValidationError) as excinfo:
        engine.retrieve(TENANT, query_text, **kwargs)

    assert excinfo.value.field == field


def test_missing_tenant_fails_before_any_io() -> None:
    engine = RetrievalEngine(_ExplodingStore(), _ExplodingProvider())

    with pytest.raises(RetrievalValidationError) as excinfo:
        engine.retrieve("", "opening hours")

    assert excinfo.value.field == "tenant_id"


@pytest.mark.parametrize(
    ("kwargs", "field"),
    [
        ({"latitude": 91.0, "longitude": 0.0}, "lat"),
        ({"latitude": 0.0, "longitude": 200.0}, "long"),
        ({"latitude": 0.0, "longitude": 0.0, "max_distance_km": -5.0}, "max_distance_km"),
        ({"latitude": 0.0, "longitude": 0.0, "weights": Weights(distance=-1.0)}, "distance_weight"),
    ],
)
def test_invalid_place_requests_fail_before_any_io(kwargs: dict[str, Any], field: str) -> None:
    engine = RetrievalEngine(_ExplodingStore(), _ExplodingProvider())

    with pytest.raises(RetrievalValidationError) as excinfo:
        engine.retrieve_places(TENANT, "cafe", **kwargs)

    assert excinfo.value.field == field


def _add_place(store: DuckDBCorpusStore, doc_id: str, km_north: float, title: str = "Cafe", **extra: Any) -> None:
    lat, lon = BANGKOK
    _add(
        store,
        doc_id,
        title,
        "Coffee and cake",
        type="place",
        latitude=lat + km_north / 111.195,
        longitude=lon,
        **extra,
    )


def test_places_never_widen_radius(store: DuckDBCorpusStore) -> None:
    _add_place(store, "p10", 10.0)
    _add_place(store, "p20", 20.0)
    engine = RetrievalEngine(store, StaticProvider([0.0, 0.0, 0.0, 0.0]))
    lat, lon = BANGKOK

    response = engine.retrieve_places(TENANT, "cafe", latitude=lat, longitude=lon, max_distance_km=5.0)

    assert response.hits == []
    assert response.tier is CascadeTier.NONE


def test_places_rank_by_relevance_and_proximity(store: DuckDBCorpusStore) -> None:
    _add_place(store, "near", 0.5, title="Cafe")
    _add_place(store, "far", 4.0, title="Cafe")
    _add_place(store, "outside", 8.0, title="Cafe")
    engine = RetrievalEngine(store, StaticProvider([0.0, 0.0, 0.0, 0.0]))
    lat, lon = BANGKOK

    response = engine.retrieve_places(TENANT, "cafe", latitude=lat, longitude=lon)

    assert response.tier is CascadeTier.HYBRID
    assert _ids(response) == ["near", "far"]
    assert response.hits[0].distance_km == pytest.approx(0.5, abs=0.01)
    assert "distance_km" in response.to_dict()["hits"][0]


def test_places_fall_back_to_nearest(store: DuckDBCorpusStore) -> None:
    orthogonal = [0.0, 1.0, 0.0, 0.0]
    _add_place(store, "c", 3.0, title="Bakery", embedding=orthogonal)
    _add_place(store, "d", 1.0, title="Bookshop", embedding=orthogonal)
    _add_place(store, "x", 9.0, title="Museum", embedding=orthogonal)
    _add(store, "t", "Cafe", "Not a place", embedding=orthogonal)
    engine = RetrievalEngine(store, StaticProvider([1.0, 0.0, 0.0, 0.0]))
    lat, lon = BANGKOK

    response = engine.retrieve_places(TENANT, "cafe", latitude=lat, longitude=lon, min_score=0.9)

    assert response.tier is CascadeTier.PROXIMITY
    assert _ids(response) == ["d", "c"]
