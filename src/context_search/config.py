"""
Configuration helpers for the retrieval engine.

Every setting may be passed explicitly; otherwise it is read from the
environment, otherwise a default applies.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path


DEFAULT_DB_PATH = "~/.context_search/corpus.duckdb"
ENV_DB_PATH = "CONTEXT_SEARCH_DB_PATH"

ENV_EMBEDDING_PROVIDER = "CONTEXT_SEARCH_EMBEDDING_PROVIDER"
ENV_EMBEDDING_MODEL = "CONTEXT_SEARCH_EMBEDDING_MODEL"
ENV_EMBEDDING_DIM = "CONTEXT_SEARCH_EMBEDDING_DIM"
ENV_EMBEDDING_TIMEOUT = "CONTEXT_SEARCH_EMBEDDING_TIMEOUT"
ENV_PRICING_PATH = "CONTEXT_SEARCH_PRICING_PATH"
ENV_LOG_LEVEL = "CONTEXT_SEARCH_LOG_LEVEL"

DEFAULT_EMBEDDING_DIM = 1024
DEFAULT_EMBEDDING_TIMEOUT = 10.0
DEFAULT_TENANT_ID = "00000000-0000-0000-0000-000000000000"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_db_path(override_path: str | None = None, *, create_parent: bool = True) -> str:
    """
    Resolve the DuckDB corpus path from CLI override, env var, or default.

    Precedence:
    1) explicit override_path
    2) CONTEXT_SEARCH_DB_PATH
    3) default path

    Readers pass ``create_parent=False`` so a missing corpus leaves no trace.
    """
    raw_path = override_path or os.getenv(ENV_DB_PATH) or DEFAULT_DB_PATH
    if raw_path == ":memory:":
        return raw_path
    resolved = Path(raw_path).expanduser().resolve()
    if create_parent:
        resolved.parent.mkdir(parents=True, exist_ok=True)
    return str(resolved)


def resolve_embedding_dim(override: int | None = None) -> int:
    if override is not None:
        return override
    return int(os.getenv(ENV_EMBEDDING_DIM, str(DEFAULT_EMBEDDING_DIM)))


def resolve_pricing_path(override_path: str | None = None) -> str | None:
    raw_path = override_path or os.getenv(ENV_PRICING_PATH)
    if not raw_path:
        return None
    return str(Path(raw_path).expanduser().resolve())


def configure_logging(level: str | None = None) -> None:
    """Install a single stream handler on the root logger.

    Only entry points (CLI, server) call this; library modules just log.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    name = (level or os.getenv(ENV_LOG_LEVEL) or "INFO").upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=_LOG_FORMAT)
