"""
FastAPI server for context retrieval.

Each request opens the corpus read-only, embeds the query once, and returns
ranked hits together with the tier and embedding call that produced them.
The tenant comes from the ``X-Tenant-ID`` header.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import DEFAULT_TENANT_ID, configure_logging, resolve_db_path, resolve_pricing_path
from .embeddings import EmbeddingProvider
from .errors import RetrievalValidationError
from .search import RetrievalEngine, Weights
from .storage import DuckDBCorpusStore, RetrievalFilters
from .usage import LoggingUsageAccountant, UsageNotifier, load_pricing_table

logger = logging.getLogger(__name__)


class FiltersModel(BaseModel):
    """Optional membership filters, ANDed together."""

    intent_scope: str | None = None
    intent_action: str | None = None
    category: str | None = None
    status: str | None = None

    def to_filters(self) -> RetrievalFilters:
        return RetrievalFilters(
            intent_scope=self.intent_scope,
            intent_action=self.intent_action,
            category=self.category,
            status=self.status,
        )


class RetrieveRequest(BaseModel):
    """Request model for context retrieval."""

    text_query: str
    semantic_query: str | None = None
    filters: FiltersModel | None = None
    top_k: int = 3
    min_score: float = 0.5
    fulltext_weight: float = 0.5
    semantic_weight: float = 0.5
    db_path: str | None = None

    def query_text(self) -> str:
        return " ".join(part for part in (self.text_query, self.semantic_query) if part)


class PlacesRequest(RetrieveRequest):
    """Request model for radius-bound place search."""

    lat: float
    long: float
    max_distance_km: float = 5.0
    distance_weight: float = 1.0


class _MissingCorpus(Exception):
    pass


def _build_embedding_provider() -> EmbeddingProvider:
    return EmbeddingProvider(
        pricing=load_pricing_table(resolve_pricing_path()),
        usage_notifier=UsageNotifier(LoggingUsageAccountant()),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared embedding provider once, on startup."""
    app.state.embedding_provider = _build_embedding_provider()
    yield


app = FastAPI(
    title="context-search",
    description="Hybrid retrieval over tenant contexts",
    lifespan=lifespan,
)


def _get_embedding_provider(request: Request) -> EmbeddingProvider:
    return request.app.state.embedding_provider


def _open_store(db_path: str | None) -> DuckDBCorpusStore:
    resolved = resolve_db_path(db_path, create_parent=False)
    if resolved != ":memory:" and not Path(resolved).exists():
        raise _MissingCorpus(f"No corpus database at {resolved}")
    return DuckDBCorpusStore(resolved, read_only=True, initialize=False)


@app.get("/api/health")
def health():
    """Liveness check."""
    return {"status": "ok"}


@app.post("/api/retrieve")
def retrieve_contexts(
    http_request: Request,
    request: RetrieveRequest,
    x_tenant_id: str = Header(DEFAULT_TENANT_ID),
):
    """Rank tenant contexts for a free-text query."""
    try:
        store = _open_store(request.db_path)
        try:
            engine = RetrievalEngine(store, _get_embedding_provider(http_request))
            response = engine.retrieve(
                x_tenant_id,
                request.query_text(),
                (request.filters or FiltersModel()).to_filters(),
                top_k=request.top_k,
                weights=Weights(
                    fulltext=request.fulltext_weight,
                    semantic=request.semantic_weight,
                ),
                min_score=request.min_score,
            )
        finally:
            store.close()
        return response.to_dict()
    except RetrievalValidationError as exc:
        return JSONResponse({"error": str(exc), "field": exc.field}, status_code=400)
    except _MissingCorpus as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    except Exception as exc:
        logger.exception("Context retrieval failed")
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.post("/api/places")
def retrieve_places(
    http_request: Request,
    request: PlacesRequest,
    x_tenant_id: str = Header(DEFAULT_TENANT_ID),
):
    """Rank places within ``max_distance_km`` of the given coordinates."""
    try:
        store = _open_store(request.db_path)
        try:
            engine = RetrievalEngine(store, _get_embedding_provider(http_request))
            response = engine.retrieve_places(
                x_tenant_id,
                request.query_text(),
                latitude=request.lat,
                longitude=request.long,
                max_distance_km=request.max_distance_km,
                filters=(request.filters or FiltersModel()).to_filters(),
                top_k=request.top_k,
                weights=Weights(
                    fulltext=request.fulltext_weight,
                    semantic=request.semantic_weight,
                    distance=request.distance_weight,
                ),
                min_score=request.min_score,
            )
        finally:
            store.close()
        return response.to_dict()
    except RetrievalValidationError as exc:
        return JSONResponse({"error": str(exc), "field": exc.field}, status_code=400)
    except _MissingCorpus as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    except Exception as exc:
        logger.exception("Place retrieval failed")
        return JSONResponse({"error": str(exc)}, status_code=500)


def run_server(host: str = "127.0.0.1", port: int = 8000, log_level: str | None = None):
    """Run the FastAPI server."""
    import uvicorn

    configure_logging(log_level)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
