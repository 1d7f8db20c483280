"""
Embedding provider for hybrid retrieval.

Wraps an external embedding API (OpenAI over REST, or Google GenAI) when
one is configured, and otherwise produces a deterministic hash embedding
so retrieval never blocks on missing credentials or a failing provider.

The hash embedding has 384 dimensions and is resized to the corpus
dimension afterwards. Offline vectors for similar text therefore collide
more often than provider vectors do: they keep the fusion pipeline
operable, they do not carry meaning.
"""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

import httpx
from google.genai import Client as GenAIClient
from google.genai import errors as genai_errors
from google.genai.types import HttpOptions

from .config import (
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_TENANT_ID,
    ENV_EMBEDDING_MODEL,
    ENV_EMBEDDING_PROVIDER,
    ENV_EMBEDDING_TIMEOUT,
    resolve_embedding_dim,
)
from .errors import EmbeddingProviderError
from .usage import (
    CostSnapshot,
    LoggingUsageAccountant,
    PricingTable,
    TokenUsage,
    UsageNotifier,
    UsageRecord,
    compute_embedding_cost,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"

HASH_EMBEDDING_DIM = 384
HASH_EMBEDDING_MODEL = "fallback-384"
NO_PROVIDER = "none"

_DEFAULT_MODELS: dict[str, str] = {
    "openai": "text-embedding-3-small",
    "google": "gemini-embedding-001",
}
_API_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_API_KEY",
}


def build_embedding_text(
    *,
    title: str | None = "",
    body: str | None = "",
    keywords: Sequence[str] | None = None,
) -> str:
    """Concatenate the non-empty sections of a context into embedding input."""
    parts: list[str] = []
    if title:
        parts.append(f"Title: {title}")
    if keywords:
        parts.append(f"Keywords: {', '.join(keywords)}")
    if body:
        parts.append(f"Body:\n{body}")
    return "\n\n".join(parts)


def resize_vector(vector: Sequence[float], target_dim: int) -> list[float]:
    """Truncate or zero-pad *vector* to exactly *target_dim* elements."""
    if target_dim < 0:
        raise ValueError(f"target_dim must be >= 0, got {target_dim}")
    if len(vector) == target_dim:
        return list(vector)
    if len(vector) > target_dim:
        return list(vector[:target_dim])
    return list(vector) + [0.0] * (target_dim - len(vector))


def _utf16_code_units(text: str) -> Iterator[int]:
    # Astral characters contribute both surrogate halves.
    data = text.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def hash_embedding(text: str, dim: int = HASH_EMBEDDING_DIM) -> list[float]:
    """Deterministic, L2-normalized character hash embedding."""
    accumulator = [0.0] * dim
    for code in _utf16_code_units(text):
        accumulator[code % dim] += (code % 13) - 6
    norm = math.sqrt(sum(value * value for value in accumulator))
    if norm == 0:
        norm = 1.0
    return [value / norm for value in accumulator]


@dataclass(frozen=True)
class EmbeddingOptions:
    """Per-call overrides of the provider's configuration.

    ``metadata`` is only used for usage logging (``tenant_id``,
    ``context_id``).
    """

    provider: str | None = None
    api_key: str | None = None
    model: str | None = None
    target_dim: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmbeddingResult:
    vector: list[float]
    dimension: int
    model: str
    provider: str
    usage: TokenUsage
    latency_ms: int
    cost: CostSnapshot
    usage_id: str | None = None

    @property
    def is_fallback(self) -> bool:
        return self.provider == NO_PROVIDER


@dataclass(frozen=True)
class _ProviderVector:
    vector: list[float]
    input_tokens: int | None = None
    total_tokens: int | None = None


class EmbeddingProvider:
    """Generate query and context embeddings, falling back to a hash vector."""

    def __init__(
        self,
        *,
        provider: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        dim: int | None = None,
        timeout: float | None = None,
        client: Any | None = None,
        http_client: httpx.Client | None = None,
        pricing: PricingTable | None = None,
        usage_notifier: UsageNotifier | None = None,
    ) -> None:
        self.provider = (provider or os.getenv(ENV_EMBEDDING_PROVIDER, NO_PROVIDER)).lower()
        self.model = (
            model
            or os.getenv(ENV_EMBEDDING_MODEL)
            or _DEFAULT_MODELS.get(self.provider, HASH_EMBEDDING_MODEL)
        )
        self.dim = resolve_embedding_dim(dim)
        self.timeout = timeout or float(
            os.getenv(ENV_EMBEDDING_TIMEOUT, str(DEFAULT_EMBEDDING_TIMEOUT))
        )
        self.pricing = pricing or PricingTable()
        self.usage_notifier = usage_notifier or UsageNotifier(LoggingUsageAccountant())
        self._api_key = api_key
        self._client = client
        self._http_client = http_client

    def embed_query(self, query: str, *, options: EmbeddingOptions | None = None) -> EmbeddingResult:
        """Embed free-text query input the way context bodies are embedded."""
        return self.embed(build_embedding_text(body=query), options=options)

    def embed_context(
        self,
        *,
        title: str,
        body: str,
        keywords: Sequence[str] | None = None,
        options: EmbeddingOptions | None = None,
    ) -> EmbeddingResult:
        text = build_embedding_text(title=title, body=body, keywords=keywords)
        return self.embed(text, options=options, task_type="RETRIEVAL_DOCUMENT")

    def embed(
        self,
        text: str,
        *,
        options: EmbeddingOptions | None = None,
        task_type: str = "RETRIEVAL_QUERY",
    ) -> EmbeddingResult:
        """Embed *text*; provider failures never propagate."""
        opts = options or EmbeddingOptions()
        provider = (opts.provider or self.provider).lower()
        model = self._resolve_model(provider, opts.model)
        target_dim = opts.target_dim or self.dim
        api_key = self._resolve_api_key(provider, opts.api_key)

        start_time = datetime.now(timezone.utc)
        started = time.perf_counter()
        raw: _ProviderVector | None = None
        if self._is_selected(provider, api_key):
            try:
                raw = self._call_provider(
                    provider, text, api_key=api_key, model=model, dim=target_dim, task_type=task_type
                )
            except Exception as exc:
                logger.warning(
                    "Embedding provider %s failed, using hash fallback: %s", provider, exc
                )

        if raw is None:
            used_provider, used_model = NO_PROVIDER, HASH_EMBEDDING_MODEL
            raw = _ProviderVector(vector=hash_embedding(text))
        else:
            used_provider, used_model = provider, model
        latency_ms = int(round((time.perf_counter() - started) * 1000))
        end_time = datetime.now(timezone.utc)

        estimated = estimate_tokens(text)
        usage = TokenUsage(
            input_tokens=raw.input_tokens if raw.input_tokens is not None else estimated,
            total_tokens=raw.total_tokens if raw.total_tokens is not None else estimated,
        )
        tenant_id = str(opts.metadata.get("tenant_id") or DEFAULT_TENANT_ID)
        cost, pricing = compute_embedding_cost(
            self.pricing.find(tenant_id, used_provider, used_model), usage
        )
        usage_id = self.usage_notifier.notify(
            UsageRecord(
                tenant_id=tenant_id,
                operation="embedding",
                provider=used_provider,
                model=used_model,
                latency_ms=latency_ms,
                usage=usage,
                cost=cost,
                pricing=pricing,
                start_time=start_time,
                end_time=end_time,
                metadata={"context_id": opts.metadata.get("context_id")},
            )
        )

        vector = resize_vector(raw.vector, target_dim)
        return EmbeddingResult(
            vector=vector,
            dimension=len(vector),
            model=used_model,
            provider=used_provider,
            usage=usage,
            latency_ms=latency_ms,
            cost=cost,
            usage_id=usage_id,
        )

    def _resolve_model(self, provider: str, override: str | None) -> str:
        if override:
            return override
        if provider == self.provider:
            return self.model
        return _DEFAULT_MODELS.get(provider, HASH_EMBEDDING_MODEL)

    def _resolve_api_key(self, provider: str, override: str | None) -> str | None:
        if override:
            return override
        if provider == self.provider and self._api_key:
            return self._api_key
        env_name = _API_KEY_ENV.get(provider)
        return os.getenv(env_name) if env_name else None

    def _is_selected(self, provider: str, api_key: str | None) -> bool:
        if provider not in _DEFAULT_MODELS:
            return False
        if provider == "google" and self._client is not None:
            return True
        return bool(api_key)

    def _call_provider(
        self,
        provider: str,
        text: str,
        *,
        api_key: str | None,
        model: str,
        dim: int,
        task_type: str,
    ) -> _ProviderVector:
        if provider == "openai":
            return self._embed_with_openai(text, api_key=api_key or "", model=model)
        return self._embed_with_google(
            text, api_key=api_key, model=model, dim=dim, task_type=task_type
        )

    def _embed_with_openai(self, text: str, *, api_key: str, model: str) -> _ProviderVector:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        payload = {"input": text, "model": model}
        try:
            if self._http_client is not None:
                response = self._http_client.post(
                    OPENAI_EMBEDDINGS_URL, headers=headers, json=payload, timeout=self.timeout
                )
            else:
                with httpx.Client(timeout=httpx.Timeout(self.timeout)) as client:
                    response = client.post(OPENAI_EMBEDDINGS_URL, headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()
            vector = [float(value) for value in data["data"][0]["embedding"]]
        except httpx.HTTPError as exc:
            raise EmbeddingProviderError(f"OpenAI embeddings request failed: {exc}") from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EmbeddingProviderError(f"OpenAI embeddings response malformed: {exc}") from exc
        if not vector:
            raise EmbeddingProviderError("OpenAI embeddings response had an empty vector")

        usage = data.get("usage") or {}
        return _ProviderVector(
            vector=vector,
            input_tokens=usage.get("prompt_tokens"),
            total_tokens=usage.get("total_tokens"),
        )

    def _embed_with_google(
        self,
        text: str,
        *,
        api_key: str | None,
        model: str,
        dim: int,
        task_type: str,
    ) -> _ProviderVector:
        client = self._client
        if client is None:
            client = GenAIClient(
                api_key=api_key,
                http_options=HttpOptions(timeout=int(self.timeout * 1000)),
            )
        try:
            result = client.models.embed_content(
                model=model,
                contents=[text],
                config={
                    "task_type": task_type,
                    "output_dimensionality": dim,
                },
            )
            vector = [float(value) for value in result.embeddings[0].values]
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise EmbeddingProviderError(f"Google embeddings request failed: {exc}") from exc
        except (AttributeError, IndexError, TypeError) as exc:
            raise EmbeddingProviderError(f"Google embeddings response malformed: {exc}") from exc
        if not vector:
            raise EmbeddingProviderError("Google embeddings response had an empty vector")
        return _ProviderVector(vector=vector)
