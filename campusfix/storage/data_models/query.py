"""Filter and sort descriptions shared by the remote store and the reconciler.

The same ``Filter`` is rendered into PostgREST query parameters for a fetch
and evaluated locally against entities patched in from the change feed.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Union

from campusfix.core.errors import EntityDecodeError
from campusfix.storage.data_models.entity import Entity, parse_timestamp

RANGE_OPERATORS = ('gt', 'gte', 'lt', 'lte')
_RESERVED = set(',.:()"\\ ')


def _render_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _quote(text: str) -> str:
    """Double-quote a value if it contains PostgREST reserved characters."""
    if not any(ch in _RESERVED for ch in text):
        return text
    escaped = text.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime) or _is_number(value):
        return value
    return _render_value(value)


def _coerce_like(actual: Any, value: Any) -> Any:
    """Convert a filter value to the type of the column value it is compared with.

    Raises ValueError when the value cannot be read as that type.
    """
    if isinstance(actual, datetime):
        try:
            return parse_timestamp(value)
        except EntityDecodeError as e:
            raise ValueError(str(e)) from e
    if _is_number(actual):
        if _is_number(value):
            return value
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f'Not a number: {value!r}') from e
    return _render_value(value)


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any

    def matches(self, entity: Entity) -> bool:
        actual = entity.get_field(self.field)
        if actual is None:
            return self.value is None
        try:
            return _comparable(actual) == _coerce_like(actual, self.value)
        except ValueError:
            return False

    def to_params(self) -> list[tuple[str, str]]:
        return [(self.field, f'eq.{_render_value(self.value)}')]


@dataclass(frozen=True)
class TextSearch:
    """Case-insensitive substring match on any of ``fields``."""

    fields: tuple[str, ...]
    term: str

    def matches(self, entity: Entity) -> bool:
        needle = self.term.lower()
        if not needle:
            return True
        for name in self.fields:
            value = entity.get_field(name)
            if value is not None and needle in str(value).lower():
                return True
        return False

    def to_params(self) -> list[tuple[str, str]]:
        if not self.term:
            return []
        pattern = _quote(f'*{self.term}*')
        clauses = ','.join(f'{name}.ilike.{pattern}' for name in self.fields)
        return [('or', f'({clauses})')]


@dataclass(frozen=True)
class Range:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in RANGE_OPERATORS:
            raise ValueError(f'Unsupported range operator: {self.op}')

    def matches(self, entity: Entity) -> bool:
        actual = entity.get_field(self.field)
        if actual is None:
            return False
        try:
            bound = _coerce_like(actual, self.value)
        except ValueError:
            return False
        actual = _comparable(actual)
        if self.op == 'gt':
            return actual > bound
        if self.op == 'gte':
            return actual >= bound
        if self.op == 'lt':
            return actual < bound
        return actual <= bound

    def to_params(self) -> list[tuple[str, str]]:
        return [(self.field, f'{self.op}.{_render_value(self.value)}')]


@dataclass(frozen=True)
class In:
    field: str
    values: tuple[Any, ...]

    def matches(self, entity: Entity) -> bool:
        actual = entity.get_field(self.field)
        if actual is None:
            return False
        expected = set()
        for value in self.values:
            try:
                expected.add(_coerce_like(actual, value))
            except ValueError:
                continue
        return _comparable(actual) in expected

    def to_params(self) -> list[tuple[str, str]]:
        rendered = ','.join(_quote(_render_value(v)) for v in self.values)
        return [(self.field, f'in.({rendered})')]


Predicate = Union[Eq, TextSearch, Range, In]


@dataclass(frozen=True)
class Filter:
    """A conjunction of predicates."""

    predicates: tuple[Predicate, ...] = ()

    @classmethod
    def of(cls, *predicates: Predicate) -> Filter:
        return cls(tuple(predicates))

    def matches(self, entity: Entity) -> bool:
        return all(p.matches(entity) for p in self.predicates)

    def with_predicate(self, predicate: Predicate) -> Filter:
        return Filter(self.predicates + (predicate,))

    def without_field(self, field_name: str) -> Filter:
        return Filter(
            tuple(p for p in self.predicates if getattr(p, 'field', None) != field_name)
        )

    def equality_scope(self, preferred_field: str | None = None) -> Eq | None:
        """Pick the single equality predicate a subscription can be scoped by."""
        equalities = [p for p in self.predicates if isinstance(p, Eq)]
        for predicate in equalities:
            if predicate.field == preferred_field:
                return predicate
        return equalities[0] if equalities else None

    def to_query_params(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        for predicate in self.predicates:
            params.extend(predicate.to_params())
        return params


@dataclass(frozen=True)
class Sort:
    field: str = 'created_at'
    descending: bool = True

    def precedes(self, a: Entity, b: Entity) -> bool:
        """Whether ``a`` belongs strictly before ``b``; missing values sort last."""
        va, vb = a.get_field(self.field), b.get_field(self.field)
        if va is None or vb is None:
            return va is not None and vb is None
        if va == vb:
            return False
        return va > vb if self.descending else va < vb

    def sorted(self, entities: Iterable[Entity]) -> list[Entity]:
        def compare(a: Entity, b: Entity) -> int:
            if self.precedes(a, b):
                return -1
            if self.precedes(b, a):
                return 1
            return 0

        return sorted(entities, key=functools.cmp_to_key(compare))

    def to_query_params(self) -> list[tuple[str, str]]:
        direction = 'desc' if self.descending else 'asc'
        return [('order', f'{self.field}.{direction}')]


@dataclass(frozen=True)
class ViewQuery:
    """Everything a view asks of the store: what, in which order, which page."""

    collection: str
    filter: Filter = field(default_factory=Filter)
    sort: Sort = field(default_factory=Sort)
    offset: int = 0
    limit: int = 20
