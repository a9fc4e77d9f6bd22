from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal, Protocol

from crm_insights.analytics.errors import NotFoundError
from crm_insights.analytics.records import RECORD_TYPES, EntityKind, Record

ConditionOp = Literal["eq", "ne", "in", "not_in", "gt", "gte", "lt", "lte", "is_null", "not_null"]
AggregateFn = Literal["count", "sum", "avg", "min", "max"]
SortDirection = Literal["asc", "desc"]


@dataclass(frozen=True, slots=True)
class Condition:
    field: str
    op: ConditionOp
    value: Any = None


@dataclass(frozen=True, slots=True)
class Aggregation:
    fn: AggregateFn
    field: str

    @property
    def label(self) -> str:
        return f"{self.fn}_{self.field}"


@dataclass(slots=True)
class AggregateRow:
    group: dict[str, Any]
    values: dict[str, Any] = field(default_factory=dict)


class EntityStore(Protocol):
    """Read-only store the analytics engines query through."""

    def find_many(
        self,
        kind: EntityKind,
        where: Sequence[Condition] = (),
        *,
        order_by: Sequence[tuple[str, SortDirection]] = (),
        limit: int | None = None,
    ) -> list[Any]:
        ...

    def aggregate(
        self,
        kind: EntityKind,
        where: Sequence[Condition],
        group_by: Sequence[str],
        aggregations: Sequence[Aggregation],
    ) -> list[AggregateRow]:
        ...

    def count(self, kind: EntityKind, where: Sequence[Condition] = ()) -> int:
        ...

    def find_unique(self, kind: EntityKind, entity_id: uuid.UUID) -> Any:
        ...


def matches(record: Any, condition: Condition) -> bool:
    value = getattr(record, condition.field)
    op = condition.op
    if op == "is_null":
        return value is None
    if op == "not_null":
        return value is not None
    if op == "eq":
        return value == condition.value
    if op == "ne":
        return value != condition.value
    if op == "in":
        return value in condition.value
    if op == "not_in":
        return value not in condition.value
    if value is None:
        return False
    if op == "gt":
        return value > condition.value
    if op == "gte":
        return value >= condition.value
    if op == "lt":
        return value < condition.value
    if op == "lte":
        return value <= condition.value
    raise ValueError(f"unsupported condition op: {op}")


def sort_records(records: list[Any], order_by: Sequence[tuple[str, SortDirection]]) -> list[Any]:
    ordered = list(records)
    for field_name, direction in reversed(order_by):
        if direction == "desc":
            ordered.sort(
                key=lambda item: (getattr(item, field_name) is not None, _sortable(getattr(item, field_name))),
                reverse=True,
            )
        else:
            ordered.sort(key=lambda item: (getattr(item, field_name) is None, _sortable(getattr(item, field_name))))
    return ordered


def _sortable(value: Any) -> Any:
    if value is None:
        return 0
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _reduce(fn: AggregateFn, values: list[Any]) -> Any:
    present = [value for value in values if value is not None]
    if fn == "count":
        return len(present)
    if not present:
        return None
    if fn == "sum":
        return sum(present[1:], start=present[0])
    if fn == "avg":
        return Decimal(sum(present[1:], start=present[0])) / Decimal(len(present))
    if fn == "min":
        return min(present)
    return max(present)


class InMemoryEntityStore:
    def __init__(self, records: Iterable[Record] = ()) -> None:
        self._records: dict[EntityKind, list[Record]] = {kind: [] for kind in EntityKind}
        self.add(*records)

    def add(self, *records: Record) -> None:
        record_kinds = {record_type: kind for kind, record_type in RECORD_TYPES.items()}
        for record in records:
            kind = record_kinds.get(type(record))
            if kind is None:
                raise TypeError(f"unsupported record type: {type(record).__name__}")
            self._records[kind].append(record)

    def find_many(
        self,
        kind: EntityKind,
        where: Sequence[Condition] = (),
        *,
        order_by: Sequence[tuple[str, SortDirection]] = (),
        limit: int | None = None,
    ) -> list[Any]:
        selected = [record for record in self._records[kind] if all(matches(record, item) for item in where)]
        selected = sort_records(selected, order_by)
        if limit is not None:
            selected = selected[:limit]
        return selected

    def aggregate(
        self,
        kind: EntityKind,
        where: Sequence[Condition],
        group_by: Sequence[str],
        aggregations: Sequence[Aggregation],
    ) -> list[AggregateRow]:
        buckets: dict[tuple[Any, ...], list[Record]] = {}
        for record in self.find_many(kind, where):
            key = tuple(getattr(record, name) for name in group_by)
            buckets.setdefault(key, []).append(record)

        rows: list[AggregateRow] = []
        for key in sorted(buckets, key=lambda item: tuple((value is None, _sortable(value)) for value in item)):
            members = buckets[key]
            row = AggregateRow(group=dict(zip(group_by, key)))
            for aggregation in aggregations:
                row.values[aggregation.label] = _reduce(
                    aggregation.fn,
                    [getattr(member, aggregation.field) for member in members],
                )
            rows.append(row)
        return rows

    def count(self, kind: EntityKind, where: Sequence[Condition] = ()) -> int:
        return len(self.find_many(kind, where))

    def find_unique(self, kind: EntityKind, entity_id: uuid.UUID) -> Any:
        for record in self._records[kind]:
            if record.id == entity_id:
                return record
        raise NotFoundError(kind.value, entity_id)
