from pathlib import Path
from typing import Iterator

import pytest

from context_search.config import (
    ENV_EMBEDDING_DIM,
    ENV_EMBEDDING_MODEL,
    ENV_EMBEDDING_PROVIDER,
    ENV_PRICING_PATH,
)
from context_search.storage import DuckDBCorpusStore


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch) -> None:
    """Keep developer credentials and settings out of the tests."""
    for name in (
        ENV_EMBEDDING_PROVIDER,
        ENV_EMBEDDING_MODEL,
        ENV_EMBEDDING_DIM,
        ENV_PRICING_PATH,
        "OPENAI_API_KEY",
        "GOOGLE_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[DuckDBCorpusStore]:
    corpus = DuckDBCorpusStore(str(tmp_path / "corpus.duckdb"), embedding_dim=4)
    yield corpus
    corpus.close()
