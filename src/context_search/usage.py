"""
Usage and cost accounting for embedding calls.

The engine does not own usage storage. It builds one ``UsageRecord`` per
embedding call and hands it to an injected ``UsageAccountant`` through a
``UsageNotifier``, which never lets accounting failures reach retrieval.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from concurrent.futures import Executor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

from pydantic import BaseModel, TypeAdapter, ValidationError

from .config import DEFAULT_TENANT_ID

logger = logging.getLogger(__name__)


class PricingEntry(BaseModel):
    """Price list entry for one provider model, per 1k tokens."""

    tenant_id: str = DEFAULT_TENANT_ID
    provider: str
    model: str
    input_per_1k: float | None = None
    cached_input_per_1k: float | None = None
    output_per_1k: float | None = None
    embedding_per_1k: float | None = None
    currency: str = "USD"
    version: str | None = None
    is_active: bool = True


_PRICING_LIST = TypeAdapter(list[PricingEntry])


class PricingTable:
    """Read-only pricing lookup.

    A tenant's own entry wins; otherwise the default tenant's entry applies.
    """

    def __init__(self, entries: Iterable[PricingEntry] = ()) -> None:
        self._entries: dict[tuple[str, str, str], PricingEntry] = {}
        for entry in entries:
            if entry.is_active:
                key = (entry.tenant_id, entry.provider.lower(), entry.model)
                self._entries[key] = entry

    @classmethod
    def from_json_file(cls, path: str) -> PricingTable:
        raw = Path(path).read_text(encoding="utf-8")
        return cls(_PRICING_LIST.validate_json(raw))

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, tenant_id: str | None, provider: str, model: str) -> PricingEntry | None:
        provider_key = provider.lower()
        if tenant_id:
            entry = self._entries.get((tenant_id, provider_key, model))
            if entry is not None:
                return entry
        return self._entries.get((DEFAULT_TENANT_ID, provider_key, model))


def load_pricing_table(path: str | None) -> PricingTable:
    """Load pricing from *path*; an unreadable or invalid file yields an empty table."""
    if not path:
        return PricingTable()
    try:
        return PricingTable.from_json_file(path)
    except (OSError, UnicodeDecodeError, ValidationError) as exc:
        logger.warning("Ignoring pricing file %s, costs will be null: %s", path, exc)
        return PricingTable()


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    total_tokens: int
    output_tokens: int = 0


@dataclass(frozen=True)
class PricingSnapshot:
    """Prices in effect when a cost was computed."""

    input_per_1k: float | None = None
    output_per_1k: float | None = None
    total_per_1k: float | None = None
    version: str | None = None
    source: str | None = None


@dataclass(frozen=True)
class CostSnapshot:
    input_usd: float | None = None
    output_usd: float | None = None
    total_usd: float | None = None
    currency: str = "USD"
    source: str | None = None


def estimate_tokens(text: str) -> int:
    """Rough token count used when a provider reports none."""
    return max(1, math.ceil(len(text) / 4))


def compute_embedding_cost(
    entry: PricingEntry | None,
    usage: TokenUsage,
) -> tuple[CostSnapshot, PricingSnapshot]:
    """Return (cost, pricing) snapshots for an embedding call.

    Unknown pricing yields all-null cost rather than zero.
    """
    if entry is None:
        return CostSnapshot(), PricingSnapshot()

    pricing = PricingSnapshot(
        input_per_1k=entry.input_per_1k,
        output_per_1k=entry.output_per_1k,
        total_per_1k=entry.embedding_per_1k,
        version=entry.version,
        source="tenant",
    )
    if entry.embedding_per_1k is None:
        return CostSnapshot(currency=entry.currency), pricing

    total = (usage.total_tokens / 1000) * entry.embedding_per_1k
    cost = CostSnapshot(total_usd=total, currency=entry.currency, source="computed")
    return cost, pricing


@dataclass(frozen=True)
class UsageRecord:
    """One metered provider call."""

    tenant_id: str
    operation: str
    provider: str
    model: str
    latency_ms: int
    usage: TokenUsage
    cost: CostSnapshot
    pricing: PricingSnapshot
    start_time: datetime
    end_time: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = self.start_time.isoformat()
        payload["end_time"] = self.end_time.isoformat()
        return payload


class UsageAccountant(Protocol):
    """Append-only sink for usage records."""

    def record(self, record: UsageRecord) -> str | None:
        """Persist a record and return its id, if the sink assigns one."""


class LoggingUsageAccountant:
    """Usage sink that writes each record to the log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def record(self, record: UsageRecord) -> str | None:
        usage_id = uuid.uuid4().hex
        logger.log(
            self.level,
            "usage %s provider=%s model=%s tenant=%s tokens=%d latency_ms=%d cost=%s",
            record.operation,
            record.provider,
            record.model,
            record.tenant_id,
            record.usage.total_tokens,
            record.latency_ms,
            record.cost.total_usd,
            extra={"usage_id": usage_id},
        )
        return usage_id


class UsageNotifier:
    """Fire-and-forget delivery of usage records.

    Failures go to the log and to the ``failures`` counter instead of the
    caller. With an executor, delivery is asynchronous and ``notify``
    returns ``None``; inline delivery returns the accountant's usage id.
    """

    def __init__(
        self,
        accountant: UsageAccountant | None = None,
        *,
        executor: Executor | None = None,
    ) -> None:
        self.accountant = accountant
        self._executor = executor
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def notify(self, record: UsageRecord) -> str | None:
        if self.accountant is None:
            return None
        if self._executor is not None:
            try:
                self._executor.submit(self._deliver, record)
            except RuntimeError as exc:
                self._record_failure(record, exc)
            return None
        return self._deliver(record)

    def _deliver(self, record: UsageRecord) -> str | None:
        assert self.accountant is not None
        try:
            return self.accountant.record(record)
        except Exception as exc:
            self._record_failure(record, exc)
            return None

    def _record_failure(self, record: UsageRecord, exc: BaseException) -> None:
        with self._lock:
            self._failures += 1
        logger.warning(
            "Failed to record %s usage for tenant %s: %s",
            record.operation,
            record.tenant_id,
            exc,
        )
