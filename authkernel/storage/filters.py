"""Lucene-like list filters.

Supported terms (whitespace separated, all ANDed)::

    email:jane@example.com     equality (``email=jane@example.com`` also works)
    name:"Jane Doe"            quoted value
    -connection:github         negation
    login_count:>=3            ranges: >, >=, <, <=
    _exists_:last_login        field is set (``-_exists_:`` for unset)
    jane                       substring match over the entity's searchable fields
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from authkernel.storage.common import EntitySpec
from authkernel.storage.errors import InvalidFilter

_TOKEN = re.compile(r'(?:[^\s"]|"[^"]*"?)+')
_FIELD_TERM = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)([:=])(.*)$", re.S)

_NEGATED = {
    "=": "!=",
    "!=": "=",
    ">": "<=",
    ">=": "<",
    "<": ">=",
    "<=": ">",
    "exists": "missing",
    "missing": "exists",
    "search": "not_search",
    "not_search": "search",
}

RANGE_OPS = (">", ">=", "<", "<=")


@dataclass(frozen=True)
class Term:
    field: Optional[str]
    op: str
    value: Any = None


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def _parse_datetime(raw: str) -> datetime:
    text = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_value(spec: EntitySpec, field: str, raw: str) -> Any:
    kind = spec.field_type(field)
    try:
        if kind is bool:
            lowered = raw.lower()
            if lowered not in ("true", "false"):
                raise ValueError(raw)
            return lowered == "true"
        if kind is int:
            return int(raw)
        if kind is datetime:
            return _parse_datetime(raw)
    except ValueError as exc:
        raise InvalidFilter(f"invalid value for {field}: {raw!r}") from exc
    return raw


def parse_query(spec: EntitySpec, q: Optional[str]) -> List[Term]:
    if not q or not q.strip():
        return []
    terms: List[Term] = []
    for token in _TOKEN.findall(q):
        negated = token.startswith("-") and len(token) > 1
        body = token[1:] if negated else token
        match = _FIELD_TERM.match(body)
        if match is None:
            if not spec.searchable:
                raise InvalidFilter(f"{spec.name} does not support free-text search")
            term = Term(None, "search", _strip_quotes(body).lower())
        else:
            field, sep, rest = match.groups()
            if field == "_exists_" and sep == ":":
                target = _strip_quotes(rest)
                _check_field(spec, target)
                term = Term(target, "exists")
            else:
                _check_field(spec, field)
                op = "="
                if sep == ":":
                    for candidate in (">=", "<=", ">", "<"):
                        if rest.startswith(candidate):
                            op, rest = candidate, rest[len(candidate):]
                            break
                value = _strip_quotes(rest)
                if op in RANGE_OPS and value == "":
                    raise InvalidFilter(f"range on {field} needs a value")
                term = Term(field, op, coerce_value(spec, field, value))
        if negated:
            term = Term(term.field, _NEGATED[term.op], term.value)
        terms.append(term)
    return terms


def _check_field(spec: EntitySpec, field: str) -> None:
    if field not in spec.filterable:
        raise InvalidFilter(f"unknown field {field!r} for {spec.name}")


def _comparable(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _search_hit(spec: EntitySpec, record: Mapping[str, Any], needle: str) -> bool:
    for name in spec.searchable:
        value = record.get(name)
        if isinstance(value, str) and needle in value.lower():
            return True
    return False


def term_matches(spec: EntitySpec, record: Mapping[str, Any], term: Term) -> bool:
    if term.op == "search":
        return _search_hit(spec, record, term.value)
    if term.op == "not_search":
        return not _search_hit(spec, record, term.value)
    current = _comparable(record.get(term.field))
    if term.op == "exists":
        return current not in (None, "")
    if term.op == "missing":
        return current in (None, "")
    if term.op == "=":
        return current == term.value
    if term.op == "!=":
        return current != term.value
    if current is None:
        return False
    try:
        if term.op == ">":
            return current > term.value
        if term.op == ">=":
            return current >= term.value
        if term.op == "<":
            return current < term.value
        if term.op == "<=":
            return current <= term.value
    except TypeError:
        return False
    raise InvalidFilter(f"unsupported operator {term.op!r}")


def record_matches(spec: EntitySpec, record: Mapping[str, Any], terms: Sequence[Term]) -> bool:
    return all(term_matches(spec, record, term) for term in terms)


def parse_sort(spec: EntitySpec, sort: Optional[str]) -> Tuple[str, bool]:
    """Parse ``field:1`` / ``field:-1`` into (field, descending)."""
    if not sort:
        return ("created_at" if "created_at" in spec.field_names else spec.key_fields[0], False)
    field, _, direction = sort.partition(":")
    _check_field(spec, field)
    if direction not in ("", "1", "-1"):
        raise InvalidFilter(f"invalid sort direction {direction!r}")
    return field, direction == "-1"


def sort_records(
    spec: EntitySpec, records: List[Dict[str, Any]], sort: Optional[str]
) -> List[Dict[str, Any]]:
    field, descending = parse_sort(spec, sort)

    def sort_key(record: Mapping[str, Any]):
        # key parts break ties deterministically
        return (_comparable(record[field]), spec.key_of(record))

    present = [r for r in records if r.get(field) is not None]
    missing = [r for r in records if r.get(field) is None]
    ordered = sorted(present, key=sort_key, reverse=descending)
    missing = sorted(missing, key=spec.key_of)
    return missing + ordered if not descending else ordered + missing


def filter_records(
    spec: EntitySpec,
    records: Sequence[Dict[str, Any]],
    *,
    q: Optional[str],
    offset: int,
    limit: int,
    sort: Optional[str],
) -> Tuple[List[Dict[str, Any]], int]:
    """Apply query, sort and paging in process; used by memory and key-value backends."""
    terms = parse_query(spec, q)
    matched = [r for r in records if record_matches(spec, r, terms)]
    ordered = sort_records(spec, matched, sort)
    return ordered[offset : offset + limit], len(ordered)
