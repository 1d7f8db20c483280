"""
Exception types raised by the retrieval engine.
"""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for retrieval engine errors."""


class RetrievalValidationError(RetrievalError, ValueError):
    """Raised before any query runs when request parameters are invalid."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class FilterParseError(RetrievalValidationError):
    """Raised when filter string syntax is invalid."""


class EmbeddingProviderError(RetrievalError):
    """Raised by a provider backend when the embedding API is unusable.

    Never escapes ``EmbeddingProvider.embed``; the provider falls back to
    the deterministic hash embedding instead.
    """
