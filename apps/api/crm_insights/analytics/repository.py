from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.orm import Session

from crm_insights.analytics.errors import NotFoundError
from crm_insights.analytics.models import (
    CRMActivity,
    CRMBranch,
    CRMCompany,
    CRMContact,
    CRMNote,
    CRMOpportunity,
    CRMOpportunityStageHistory,
    CRMProject,
    CRMProposal,
    CRMUser,
)
from crm_insights.analytics.records import RECORD_TYPES, EntityKind
from crm_insights.analytics.store import AggregateRow, Aggregation, Condition, SortDirection

MODELS: dict[EntityKind, type[Any]] = {
    EntityKind.COMPANY: CRMCompany,
    EntityKind.BRANCH: CRMBranch,
    EntityKind.CONTACT: CRMContact,
    EntityKind.USER: CRMUser,
    EntityKind.OPPORTUNITY: CRMOpportunity,
    EntityKind.STAGE_HISTORY: CRMOpportunityStageHistory,
    EntityKind.PROPOSAL: CRMProposal,
    EntityKind.ACTIVITY: CRMActivity,
    EntityKind.NOTE: CRMNote,
    EntityKind.PROJECT: CRMProject,
}

_AGGREGATE_FUNCTIONS = {
    "count": func.count,
    "sum": func.sum,
    "avg": func.avg,
    "min": func.min,
    "max": func.max,
}


class SqlAlchemyEntityStore:
    """EntityStore over the CRM tables; soft-deleted rows are never returned."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_many(
        self,
        kind: EntityKind,
        where: Sequence[Condition] = (),
        *,
        order_by: Sequence[tuple[str, SortDirection]] = (),
        limit: int | None = None,
    ) -> list[Any]:
        model = MODELS[kind]
        stmt = select(model).where(*self._where(kind, where))
        for field_name, direction in order_by:
            column = self._column(kind, field_name)
            stmt = stmt.order_by(column.desc().nulls_last() if direction == "desc" else column.asc().nulls_last())
        if limit is not None:
            stmt = stmt.limit(limit)
        record_type = RECORD_TYPES[kind]
        return [record_type.model_validate(row) for row in self.session.scalars(stmt).all()]

    def aggregate(
        self,
        kind: EntityKind,
        where: Sequence[Condition],
        group_by: Sequence[str],
        aggregations: Sequence[Aggregation],
    ) -> list[AggregateRow]:
        group_columns = [self._column(kind, name).label(name) for name in group_by]
        value_columns = [
            _AGGREGATE_FUNCTIONS[aggregation.fn](self._column(kind, aggregation.field)).label(aggregation.label)
            for aggregation in aggregations
        ]
        stmt = select(*group_columns, *value_columns).select_from(MODELS[kind]).where(*self._where(kind, where))
        if group_columns:
            stmt = stmt.group_by(*group_columns).order_by(*group_columns)

        rows: list[AggregateRow] = []
        for row in self.session.execute(stmt).mappings():
            rows.append(
                AggregateRow(
                    group={name: row[name] for name in group_by},
                    values={aggregation.label: row[aggregation.label] for aggregation in aggregations},
                )
            )
        return rows

    def count(self, kind: EntityKind, where: Sequence[Condition] = ()) -> int:
        stmt = select(func.count()).select_from(MODELS[kind]).where(*self._where(kind, where))
        return int(self.session.scalar(stmt) or 0)

    def find_unique(self, kind: EntityKind, entity_id: uuid.UUID) -> Any:
        rows = self.find_many(kind, [Condition("id", "eq", entity_id)], limit=1)
        if not rows:
            raise NotFoundError(kind.value, entity_id)
        return rows[0]

    def _where(self, kind: EntityKind, conditions: Sequence[Condition]) -> list[ColumnElement[bool]]:
        model = MODELS[kind]
        clauses: list[ColumnElement[bool]] = []
        if hasattr(model, "deleted_at"):
            clauses.append(model.deleted_at.is_(None))
        for condition in conditions:
            clauses.append(self._clause(self._column(kind, condition.field), condition))
        return clauses

    @staticmethod
    def _column(kind: EntityKind, field_name: str) -> ColumnElement[Any]:
        if kind == EntityKind.OPPORTUNITY and field_name == "expected_amount":
            return func.coalesce(CRMOpportunity.expected_amount, CRMOpportunity.amount)
        column = getattr(MODELS[kind], field_name, None)
        if column is None:
            raise ValueError(f"unknown field for {kind.value}: {field_name}")
        return column

    @staticmethod
    def _clause(column: ColumnElement[Any], condition: Condition) -> ColumnElement[bool]:
        op = condition.op
        value = condition.value
        if op == "eq":
            return column.is_(None) if value is None else column == value
        if op == "ne":
            return column.is_not(None) if value is None else column != value
        if op == "in":
            return column.in_(list(value))
        if op == "not_in":
            return column.not_in(list(value))
        if op == "gt":
            return column > value
        if op == "gte":
            return column >= value
        if op == "lt":
            return column < value
        if op == "lte":
            return column <= value
        if op == "is_null":
            return column.is_(None)
        if op == "not_null":
            return column.is_not(None)
        raise ValueError(f"unsupported condition op: {op}")
