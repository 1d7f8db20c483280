"""
Typed query predicates shared by corpus stores.

A ``QueryScope`` expands into a list of predicates that a store ANDs
together. Each store compiles predicates into its own parameterized query
syntax; no caller ever builds query text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from ..errors import RetrievalValidationError


@dataclass(frozen=True)
class TenantIs:
    tenant_id: str


@dataclass(frozen=True)
class HasIntentScope:
    scope: str


@dataclass(frozen=True)
class HasIntentAction:
    action: str


@dataclass(frozen=True)
class InCategory:
    """Exact category slug, or case-insensitive fragment of its name."""

    category: str


@dataclass(frozen=True)
class HasStatus:
    status: str


@dataclass(frozen=True)
class ContextTypeIs:
    context_type: str


@dataclass(frozen=True)
class HasEmbedding:
    pass


@dataclass(frozen=True)
class HasCoordinates:
    pass


@dataclass(frozen=True)
class WithinRadius:
    latitude: float
    longitude: float
    max_km: float


@dataclass(frozen=True)
class MatchesAnyText:
    """Case-insensitive substring match of any term against title or body."""

    terms: tuple[str, ...]


Predicate = Union[
    TenantIs,
    HasIntentScope,
    HasIntentAction,
    InCategory,
    HasStatus,
    ContextTypeIs,
    HasEmbedding,
    HasCoordinates,
    WithinRadius,
    MatchesAnyText,
]


@dataclass(frozen=True)
class RetrievalFilters:
    """Optional exact-membership filters; all present filters are ANDed."""

    intent_scope: str | None = None
    intent_action: str | None = None
    category: str | None = None
    status: str | None = None

    def predicates(self) -> list[Predicate]:
        predicates: list[Predicate] = []
        if self.intent_scope:
            predicates.append(HasIntentScope(self.intent_scope))
        if self.intent_action:
            predicates.append(HasIntentAction(self.intent_action))
        if self.category:
            predicates.append(InCategory(self.category))
        if self.status:
            predicates.append(HasStatus(self.status))
        return predicates

    def is_empty(self) -> bool:
        return not self.predicates()


EARTH_RADIUS_KM = 6371.0
MIN_RADIUS_KM = 0.001


@dataclass(frozen=True)
class GeoQuery:
    """Query origin and hard search radius."""

    latitude: float
    longitude: float
    max_km: float = 5.0


@dataclass(frozen=True)
class QueryScope:
    """Tenant, filters, and optional geography shared by every tier query."""

    tenant_id: str
    filters: RetrievalFilters = field(default_factory=RetrievalFilters)
    context_type: str | None = None
    geo: GeoQuery | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.tenant_id, str) or not self.tenant_id.strip():
            raise RetrievalValidationError("tenant_id is required", field="tenant_id")

    def predicates(self) -> list[Predicate]:
        # The tenant predicate always comes first and is never optional.
        predicates: list[Predicate] = [TenantIs(self.tenant_id)]
        predicates.extend(self.filters.predicates())
        if self.context_type:
            predicates.append(ContextTypeIs(self.context_type))
        if self.geo is not None:
            predicates.append(HasCoordinates())
            predicates.append(
                WithinRadius(
                    latitude=self.geo.latitude,
                    longitude=self.geo.longitude,
                    max_km=self.geo.max_km,
                )
            )
        return predicates
