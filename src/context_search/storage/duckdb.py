"""
DuckDB-backed corpus store.

Every query is assembled from the predicates of a ``QueryScope``; values
always travel as positional parameters.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import duckdb

from ..config import resolve_embedding_dim
from ..embeddings import resize_vector
from .base import CategoryRecord, ContextRecord
from .predicates import (
    EARTH_RADIUS_KM,
    MIN_RADIUS_KM,
    ContextTypeIs,
    HasCoordinates,
    HasEmbedding,
    HasIntentAction,
    HasIntentScope,
    HasStatus,
    InCategory,
    MatchesAnyText,
    Predicate,
    QueryScope,
    TenantIs,
    WithinRadius,
)

TITLE_TOKEN_WEIGHT = 1.0
BODY_TOKEN_WEIGHT = 0.4

# Whitespace and ASCII punctuation. Shared by Python and SQL (RE2) so query
# tokens and stored tokens are split identically.
TOKEN_SEPARATORS = r"[\t\n\f\r !-/:-@\[-`{-~]+"
_TOKEN_SPLIT = re.compile(TOKEN_SEPARATORS)

_BASE_COLUMNS = "c.id, c.title, c.body, c.instruction, c.updated_at"

_DISTANCE_SQL = (
    f"2 * {EARTH_RADIUS_KM} * asin(sqrt(least(1, "
    "pow(sin(radians(c.latitude - ?) / 2), 2) "
    "+ cos(radians(?)) * cos(radians(c.latitude)) "
    "* pow(sin(radians(c.longitude - ?) / 2), 2))))"
)


def query_tokens(text: str, max_tokens: int = 16) -> list[str]:
    """Distinct lowercase tokens of *text*, in order of appearance."""
    tokens: list[str] = []
    for token in _TOKEN_SPLIT.split(text.lower()):
        if token and token not in tokens:
            tokens.append(token)
        if len(tokens) >= max_tokens:
            break
    return tokens


def _distance_params(latitude: float, longitude: float) -> list[Any]:
    return [float(latitude), float(latitude), float(longitude)]


def _to_utc_naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class DuckDBCorpusStore:
    """DuckDB persistence for contexts and categories, queried per tenant."""

    def __init__(
        self,
        db_path: str,
        *,
        read_only: bool = False,
        initialize: bool = True,
        embedding_dim: int | None = None,
    ) -> None:
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            self.db_path = str(Path(db_path).expanduser().resolve())
            if not read_only:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.read_only = read_only
        self.embedding_dim = resolve_embedding_dim(embedding_dim)
        self._conn = duckdb.connect(self.db_path, read_only=read_only)
        if initialize and not read_only:
            self.initialize()

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self._conn.close()

    def initialize(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contexts (
                id VARCHAR NOT NULL,
                tenant_id VARCHAR NOT NULL,
                type VARCHAR NOT NULL DEFAULT 'text',
                title VARCHAR NOT NULL,
                body VARCHAR NOT NULL,
                instruction VARCHAR,
                keywords VARCHAR[],
                embedding DOUBLE[],
                latitude DOUBLE,
                longitude DOUBLE,
                intent_scopes VARCHAR[],
                intent_actions VARCHAR[],
                status VARCHAR NOT NULL DEFAULT 'active',
                updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (tenant_id, id)
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS categories (
                id VARCHAR PRIMARY KEY,
                tenant_id VARCHAR NOT NULL,
                slug VARCHAR NOT NULL,
                name VARCHAR NOT NULL,
                UNIQUE(tenant_id, slug)
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS context_categories (
                tenant_id VARCHAR NOT NULL,
                context_id VARCHAR NOT NULL,
                category_id VARCHAR NOT NULL,
                PRIMARY KEY (tenant_id, context_id, category_id)
            );
            """
        )

    def upsert_category(self, category: CategoryRecord) -> None:
        self._conn.execute(
            """
            INSERT INTO categories (id, tenant_id, slug, name)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                slug = excluded.slug,
                name = excluded.name
            """,
            [category.id, category.tenant_id, category.slug, category.name],
        )

    def upsert_context(self, record: ContextRecord) -> None:
        """Insert or replace a context and its category links.

        Stored embeddings are resized to the store's dimension.
        """
        # DuckDB cannot update list columns of indexed rows in place.
        self._conn.execute(
            "DELETE FROM context_categories WHERE tenant_id = ? AND context_id = ?",
            [record.tenant_id, record.id],
        )
        self._conn.execute(
            "DELETE FROM contexts WHERE tenant_id = ? AND id = ?",
            [record.tenant_id, record.id],
        )

        embedding = None
        if record.embedding is not None:
            embedding = [float(value) for value in resize_vector(record.embedding, self.embedding_dim)]

        self._conn.execute(
            """
            INSERT INTO contexts (
                id, tenant_id, type, title, body, instruction, keywords, embedding,
                latitude, longitude, intent_scopes, intent_actions, status, updated_at
            )
            VALUES (
                ?, ?, ?, ?, ?, ?, CAST(? AS VARCHAR[]), CAST(? AS DOUBLE[]),
                ?, ?, CAST(? AS VARCHAR[]), CAST(? AS VARCHAR[]), ?,
                coalesce(CAST(? AS TIMESTAMP), current_timestamp::TIMESTAMP)
            )
            """,
            [
                record.id,
                record.tenant_id,
                record.type,
                record.title,
                record.body,
                record.instruction,
                list(record.keywords),
                embedding,
                record.latitude,
                record.longitude,
                list(record.intent_scopes),
                list(record.intent_actions),
                record.status,
                _to_utc_naive(record.updated_at),
            ],
        )

        if record.category_ids:
            self._conn.executemany(
                """
                INSERT INTO context_categories (tenant_id, context_id, category_id)
                VALUES (?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                [(record.tenant_id, record.id, category_id) for category_id in record.category_ids],
            )

    def count_contexts(self, *, tenant_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM contexts WHERE tenant_id = ?",
            [tenant_id],
        ).fetchone()
        return int(row[0]) if row else 0

    def vector_query(
        self,
        scope: QueryScope,
        query_vector: Sequence[float],
        limit: int,
    ) -> list[dict[str, Any]]:
        vector = [float(value) for value in resize_vector(query_vector, self.embedding_dim)]
        if not any(vector):
            return []
        return self._ranked_query(
            scope,
            score_sql="list_cosine_similarity(c.embedding, CAST(? AS DOUBLE[]))",
            score_params=[vector],
            score_name="vec_score",
            extra_predicates=[HasEmbedding()],
            # Zero-norm vectors produce NaN similarity.
            keep_sql="vec_score IS NOT NULL AND NOT isnan(vec_score)",
            limit=limit,
        )

    def text_query(
        self,
        scope: QueryScope,
        query_text: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        tokens = query_tokens(query_text)
        if not tokens:
            return []

        title_tokens = f"string_split_regex(lower(c.title), '{TOKEN_SEPARATORS}')"
        body_tokens = f"string_split_regex(lower(c.body), '{TOKEN_SEPARATORS}')"
        term_sql = (
            f"CASE WHEN list_contains({title_tokens}, ?) THEN {TITLE_TOKEN_WEIGHT} ELSE 0 END"
            f" + CASE WHEN list_contains({body_tokens}, ?) THEN {BODY_TOKEN_WEIGHT} ELSE 0 END"
        )
        params: list[Any] = []
        for token in tokens:
            params.extend([token, token])
        return self._ranked_query(
            scope,
            score_sql=" + ".join(f"({term_sql})" for _ in tokens),
            score_params=params,
            score_name="fts_score",
            keep_sql="fts_score > 0",
            limit=limit,
        )

    def substring_query(
        self,
        scope: QueryScope,
        terms: Sequence[str],
        limit: int,
    ) -> list[dict[str, Any]]:
        cleaned = tuple(term for term in terms if term)
        if not cleaned:
            return []
        return self._recent_query(scope, [MatchesAnyText(cleaned)], limit)

    def recency_query(self, scope: QueryScope, limit: int) -> list[dict[str, Any]]:
        return self._recent_query(scope, [], limit)

    def _ranked_query(
        self,
        scope: QueryScope,
        *,
        score_sql: str,
        score_params: list[Any],
        score_name: str,
        keep_sql: str,
        limit: int,
        extra_predicates: Sequence[Predicate] = (),
    ) -> list[dict[str, Any]]:
        columns, column_params = self._select_columns(scope)
        where_sql, where_params = self._where(scope, extra_predicates)
        sql = f"""
            SELECT * FROM (
                SELECT {columns}, {score_sql} AS {score_name}
                FROM contexts c
                WHERE {where_sql}
            ) ranked
            WHERE {keep_sql}
            ORDER BY {score_name} DESC, updated_at DESC, id ASC
            LIMIT ?
        """
        params: list[Any] = [*column_params, *score_params, *where_params, int(limit)]
        return self._fetch(sql, params)

    def _recent_query(
        self,
        scope: QueryScope,
        extra_predicates: Sequence[Predicate],
        limit: int,
    ) -> list[dict[str, Any]]:
        columns, column_params = self._select_columns(scope)
        where_sql, where_params = self._where(scope, extra_predicates)
        sql = f"""
            SELECT {columns}
            FROM contexts c
            WHERE {where_sql}
            ORDER BY c.updated_at DESC, c.id ASC
            LIMIT ?
        """
        params: list[Any] = [*column_params, *where_params, int(limit)]
        return self._fetch(sql, params)

    @staticmethod
    def _select_columns(scope: QueryScope) -> tuple[str, list[Any]]:
        if scope.geo is None:
            return _BASE_COLUMNS, []
        return (
            f"{_BASE_COLUMNS}, {_DISTANCE_SQL} AS distance_km",
            _distance_params(scope.geo.latitude, scope.geo.longitude),
        )

    def _where(
        self,
        scope: QueryScope,
        extra_predicates: Sequence[Predicate],
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for predicate in [*scope.predicates(), *extra_predicates]:
            clause, clause_params = self._predicate_clause(predicate)
            clauses.append(clause)
            params.extend(clause_params)
        return "\n  AND ".join(clauses), params

    def _fetch(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        # One cursor per query: the vector and text queries may run on
        # different threads.
        cursor = self._conn.cursor()
        try:
            result = cursor.execute(sql, params)
            names = [column[0] for column in result.description]
            rows = result.fetchall()
        finally:
            cursor.close()

        results: list[dict[str, Any]] = []
        for row in rows:
            item = dict(zip(names, row))
            item["id"] = str(item["id"])
            for key in ("vec_score", "fts_score", "distance_km"):
                if item.get(key) is not None:
                    item[key] = float(item[key])
            results.append(item)
        return results

    @staticmethod
    def _predicate_clause(predicate: Predicate) -> tuple[str, list[Any]]:
        if isinstance(predicate, TenantIs):
            return "c.tenant_id = ?", [predicate.tenant_id]
        if isinstance(predicate, HasIntentScope):
            return "list_contains(c.intent_scopes, ?)", [predicate.scope]
        if isinstance(predicate, HasIntentAction):
            return "list_contains(c.intent_actions, ?)", [predicate.action]
        if isinstance(predicate, InCategory):
            return (
                """
                EXISTS (
                    SELECT 1
                    FROM context_categories cc
                    JOIN categories cat
                      ON cat.id = cc.category_id AND cat.tenant_id = cc.tenant_id
                    WHERE cc.tenant_id = c.tenant_id
                      AND cc.context_id = c.id
                      AND (cat.slug = ? OR cat.name ILIKE '%' || ? || '%')
                )
                """,
                [predicate.category, predicate.category],
            )
        if isinstance(predicate, HasStatus):
            return "c.status = ?", [predicate.status]
        if isinstance(predicate, ContextTypeIs):
            return "c.type = ?", [predicate.context_type]
        if isinstance(predicate, HasEmbedding):
            return "c.embedding IS NOT NULL", []
        if isinstance(predicate, HasCoordinates):
            return "c.latitude IS NOT NULL AND c.longitude IS NOT NULL", []
        if isinstance(predicate, WithinRadius):
            return (
                f"{_DISTANCE_SQL} <= ?",
                [
                    *_distance_params(predicate.latitude, predicate.longitude),
                    max(MIN_RADIUS_KM, float(predicate.max_km)),
                ],
            )
        if isinstance(predicate, MatchesAnyText):
            term_sql = "contains(lower(c.title), lower(?)) OR contains(lower(c.body), lower(?))"
            params: list[Any] = []
            for term in predicate.terms:
                params.extend([term, term])
            return "(" + " OR ".join(f"({term_sql})" for _ in predicate.terms) + ")", params
        raise ValueError(f"Unsupported query predicate: {predicate!r}")
