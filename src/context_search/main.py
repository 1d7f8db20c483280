import json
from typing import Annotated

import duckdb
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from typer import Argument, Exit, Option, Typer

from .config import DEFAULT_TENANT_ID, configure_logging, resolve_db_path, resolve_pricing_path
from .embeddings import EmbeddingProvider
from .errors import RetrievalValidationError
from .search import RetrievalEngine, RetrievalResponse, Weights, parse_retrieval_filters
from .search.filters import supported_filter_syntax
from .storage import DuckDBCorpusStore
from .usage import LoggingUsageAccountant, UsageNotifier, load_pricing_table

app = Typer(help="Hybrid retrieval over tenant-scoped contexts.")

TenantOption = Annotated[str, Option("--tenant", "-t", help="Tenant id to search within.")]
FiltersOption = Annotated[
    str | None, Option("--filters", "-f", help=supported_filter_syntax())
]
TopKOption = Annotated[int, Option("--top-k", "-k", help="Number of hits to return (1-20).")]
MinScoreOption = Annotated[float, Option("--min-score", help="Minimum fused relevance score.")]
FulltextOption = Annotated[float, Option("--fulltext-weight", help="Weight of full-text rank.")]
SemanticOption = Annotated[float, Option("--semantic-weight", help="Weight of vector similarity.")]
DbPathOption = Annotated[
    str | None, Option("--db-path", help="DuckDB corpus path (defaults to CONTEXT_SEARCH_DB_PATH).")
]
JsonOption = Annotated[bool, Option("--json", help="Print the raw JSON response.")]


@app.callback()
def cli(
    log_level: Annotated[
        str | None, Option("--log-level", help="Log level (defaults to CONTEXT_SEARCH_LOG_LEVEL).")
    ] = None,
) -> None:
    configure_logging(log_level)


def _build_engine(db_path: str | None) -> tuple[RetrievalEngine, DuckDBCorpusStore]:
    store = DuckDBCorpusStore(
        resolve_db_path(db_path, create_parent=False), read_only=True, initialize=False
    )
    provider = EmbeddingProvider(
        pricing=load_pricing_table(resolve_pricing_path()),
        usage_notifier=UsageNotifier(LoggingUsageAccountant()),
    )
    return RetrievalEngine(store, provider), store


def _render(console: Console, response: RetrievalResponse, *, as_json: bool) -> None:
    if as_json:
        console.print_json(json.dumps(response.to_dict(), default=str))
        return

    if not response.hits:
        console.print(Panel("No matching contexts.", title="Results", border_style="bold red"))
        return

    show_distance = any(hit.distance_km is not None for hit in response.hits)
    table = Table(title=f"Results ({response.tier.value} tier)", title_justify="left")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    if show_distance:
        table.add_column("Km", justify="right")
    table.add_column("Title", style="bold")
    table.add_column("Body")
    for rank, hit in enumerate(response.hits, start=1):
        row = [str(rank), f"{hit.score:.3f}"]
        if show_distance:
            row.append(f"{hit.distance_km:.2f}" if hit.distance_km is not None else "-")
        body = hit.body if len(hit.body) <= 160 else hit.body[:157] + "..."
        row.extend([hit.title, body])
        table.add_row(*row)
    console.print(table)
    console.print(
        f"[dim]embedding: {response.embedding_provider}/{response.embedding_model}, "
        f"{response.embedding.usage.total_tokens} tokens, {response.embedding.latency_ms} ms[/]"
    )


@app.command()
def search(
    query: Annotated[str, Argument(help="Free-text query.")],
    tenant: TenantOption = DEFAULT_TENANT_ID,
    filters: FiltersOption = None,
    top_k: TopKOption = 3,
    min_score: MinScoreOption = 0.5,
    fulltext_weight: FulltextOption = 0.5,
    semantic_weight: SemanticOption = 0.5,
    db_path: DbPathOption = None,
    as_json: JsonOption = False,
) -> None:
    """Rank contexts for QUERY, falling back tier by tier until something matches."""
    console = Console()
    try:
        parsed_filters = parse_retrieval_filters(filters)
        engine, store = _build_engine(db_path)
        try:
            response = engine.retrieve(
                tenant,
                query,
                parsed_filters,
                top_k=top_k,
                weights=Weights(fulltext=fulltext_weight, semantic=semantic_weight),
                min_score=min_score,
            )
        finally:
            store.close()
    except RetrievalValidationError as exc:
        console.print(f"[bold red]Invalid request:[/] {exc}")
        raise Exit(code=2) from exc
    except duckdb.Error as exc:
        console.print(f"[bold red]Could not read corpus:[/] {exc}")
        raise Exit(code=1) from exc
    _render(console, response, as_json=as_json)


@app.command()
def places(
    query: Annotated[str, Argument(help="Free-text query.")],
    lat: Annotated[float, Option("--lat", help="Latitude of the search origin.")],
    long: Annotated[float, Option("--long", help="Longitude of the search origin.")],
    max_km: Annotated[float, Option("--max-km", help="Hard search radius in kilometres.")] = 5.0,
    tenant: TenantOption = DEFAULT_TENANT_ID,
    filters: FiltersOption = None,
    top_k: TopKOption = 3,
    min_score: MinScoreOption = 0.5,
    fulltext_weight: FulltextOption = 0.5,
    semantic_weight: SemanticOption = 0.5,
    distance_weight: Annotated[
        float, Option("--distance-weight", help="Weight of proximity.")
    ] = 1.0,
    db_path: DbPathOption = None,
    as_json: JsonOption = False,
) -> None:
    """Rank places near a point; never searches beyond --max-km."""
    console = Console()
    try:
        parsed_filters = parse_retrieval_filters(filters)
        engine, store = _build_engine(db_path)
        try:
            response = engine.retrieve_places(
                tenant,
                query,
                latitude=lat,
                longitude=long,
                max_distance_km=max_km,
                filters=parsed_filters,
                top_k=top_k,
                weights=Weights(
                    fulltext=fulltext_weight,
                    semantic=semantic_weight,
                    distance=distance_weight,
                ),
                min_score=min_score,
            )
        finally:
            store.close()
    except RetrievalValidationError as exc:
        console.print(f"[bold red]Invalid request:[/] {exc}")
        raise Exit(code=2) from exc
    except duckdb.Error as exc:
        console.print(f"[bold red]Could not read corpus:[/] {exc}")
        raise Exit(code=1) from exc
    _render(console, response, as_json=as_json)


@app.command()
def serve(
    host: Annotated[str, Option("--host", help="Interface to bind.")] = "127.0.0.1",
    port: Annotated[int, Option("--port", help="Port to listen on.")] = 8000,
) -> None:
    """Start the HTTP retrieval server."""
    from .server import run_server

    run_server(host=host, port=port)
