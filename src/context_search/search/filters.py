"""
Filter string parsing for the CLI and other text surfaces.
"""

from __future__ import annotations

import re

from ..errors import FilterParseError
from ..storage.predicates import RetrievalFilters


FILTER_FIELDS = ("intent_scope", "intent_action", "category", "status")

_CONDITION_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*(=|:)\s*(.+?)\s*$")


def supported_filter_syntax() -> str:
    """Return a short help text for filter syntax."""
    return (
        "Supported filter syntax: `field=value` or `field:value` for "
        f"{', '.join(FILTER_FIELDS)}; quote values containing commas; "
        "combine with comma or `and`."
    )


def parse_retrieval_filters(raw_filters: str | None) -> RetrievalFilters:
    """Parse ``"intent_scope=menu, category=cafe"`` into ``RetrievalFilters``."""
    if raw_filters is None or not raw_filters.strip():
        return RetrievalFilters()

    values: dict[str, str] = {}
    for condition in _split_conditions(raw_filters):
        field, value = _parse_condition(condition)
        if field in values:
            raise FilterParseError(f"Filter field given more than once: {field!r}", field=field)
        values[field] = value
    return RetrievalFilters(**values)


def _parse_condition(condition: str) -> tuple[str, str]:
    match = _CONDITION_RE.match(condition)
    if not match:
        raise FilterParseError(f"Invalid filter syntax: {condition!r}")

    field = match.group(1).lower()
    if field not in FILTER_FIELDS:
        raise FilterParseError(
            f"Unknown filter field {field!r}. Allowed fields: {', '.join(FILTER_FIELDS)}",
            field=field,
        )

    value = match.group(3)
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        value = value[1:-1]
    if not value.strip():
        raise FilterParseError(f"Missing filter value for {field!r}", field=field)
    return field, value


def _split_conditions(raw: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(raw):
        ch = raw[i]

        if quote is not None:
            current.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in {"'", '"'}:
            quote = ch
            current.append(ch)
            i += 1
            continue

        if ch == ",":
            _flush_part(parts, current)
            i += 1
            continue

        if (
            raw[i : i + 3].lower() == "and"
            and (i == 0 or raw[i - 1].isspace())
            and (i + 3 == len(raw) or raw[i + 3].isspace())
        ):
            _flush_part(parts, current)
            i += 3
            continue

        current.append(ch)
        i += 1

    if quote is not None:
        raise FilterParseError(f"Unterminated quote in filters: {raw!r}")
    _flush_part(parts, current)
    return parts


def _flush_part(parts: list[str], current: list[str]) -> None:
    text = "".join(current).strip()
    if text:
        parts.append(text)
    current.clear()
