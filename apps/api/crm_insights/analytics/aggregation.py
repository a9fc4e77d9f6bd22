from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator

from crm_insights.analytics.errors import InvalidRangeError
from crm_insights.analytics.primitives import ZERO, weighted_forecast
from crm_insights.analytics.records import (
    CLOSED_STAGES,
    PROPOSAL_STATUS_ORDER,
    EntityKind,
    OpportunityRecord,
    OpportunityStage,
    ProposalRecord,
    StageHistoryRecord,
    stage_rank,
)
from crm_insights.analytics.store import AggregateRow, Aggregation, Condition, EntityStore

T = TypeVar("T")

_OPPORTUNITY_AGGREGATIONS = (
    Aggregation("count", "id"),
    Aggregation("sum", "amount"),
    Aggregation("sum", "expected_amount"),
    Aggregation("avg", "probability"),
)
_PROPOSAL_AGGREGATIONS = (
    Aggregation("count", "id"),
    Aggregation("sum", "total_amount"),
    Aggregation("sum", "discount_amount"),
    Aggregation("avg", "discount_percent"),
)


class _Filter(BaseModel):
    model_config = ConfigDict(frozen=True)

    @field_validator("date_from", "date_to", check_fields=False)
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class PipelineFilter(_Filter):
    sales_team_id: uuid.UUID | None = None
    account_manager_id: uuid.UUID | None = None
    company_id: uuid.UUID | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def check_ranges(self) -> None:
        _check_order("date", self.date_from, self.date_to)

    def opportunity_conditions(self) -> list[Condition]:
        conditions: list[Condition] = []
        if self.sales_team_id is not None:
            conditions.append(Condition("sales_team_id", "eq", self.sales_team_id))
        if self.account_manager_id is not None:
            conditions.append(Condition("account_manager_id", "eq", self.account_manager_id))
        if self.company_id is not None:
            conditions.append(Condition("company_id", "eq", self.company_id))
        return conditions

    def created_conditions(self) -> list[Condition]:
        conditions: list[Condition] = []
        if self.date_from is not None:
            conditions.append(Condition("created_at", "gte", self.date_from))
        if self.date_to is not None:
            conditions.append(Condition("created_at", "lte", self.date_to))
        return conditions

    @property
    def scopes_opportunities(self) -> bool:
        return bool(self.opportunity_conditions())


class ProposalFilter(PipelineFilter):
    template_id: uuid.UUID | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None

    def check_ranges(self) -> None:
        super().check_ranges()
        _check_order("amount", self.min_amount, self.max_amount)

    def proposal_conditions(self) -> list[Condition]:
        conditions = self.created_conditions()
        if self.template_id is not None:
            conditions.append(Condition("template_id", "eq", self.template_id))
        if self.min_amount is not None:
            conditions.append(Condition("total_amount", "gte", self.min_amount))
        if self.max_amount is not None:
            conditions.append(Condition("total_amount", "lte", self.max_amount))
        return conditions


class InteractionFilter(_Filter):
    date_from: datetime | None = None
    date_to: datetime | None = None
    activity_type: str | None = None
    user_id: uuid.UUID | None = None
    limit: int | None = None

    def check_ranges(self) -> None:
        _check_order("date", self.date_from, self.date_to)
        if self.limit is not None and self.limit < 1:
            raise InvalidRangeError("limit", 1, self.limit, message="limit must be a positive integer")


def _check_order(name: str, lower: Any, upper: Any) -> None:
    if lower is not None and upper is not None and lower > upper:
        raise InvalidRangeError(name, lower, upper)


@dataclass(frozen=True, slots=True)
class AggregateRecord:
    key: Any
    count: int = 0
    sum_amount: Decimal = ZERO
    sum_expected_amount: Decimal = ZERO
    avg_probability: float = 0.0
    weighted_value: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class ProposalAggregate:
    key: Any
    count: int = 0
    sum_total_amount: Decimal = ZERO
    sum_discount_amount: Decimal = ZERO
    avg_discount_percent: float = 0.0


def month_key(value: date | datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def summarize_opportunities(key: Any, records: Sequence[OpportunityRecord]) -> AggregateRecord:
    """Fold a record set into one AggregateRecord; ``weighted_value`` covers open deals only."""
    probabilities = [record.probability for record in records if record.probability is not None]
    return AggregateRecord(
        key=key,
        count=len(records),
        sum_amount=sum((record.amount for record in records), ZERO),
        sum_expected_amount=sum((record.expected_amount for record in records), ZERO),
        avg_probability=(sum(probabilities) / len(probabilities)) if probabilities else 0.0,
        weighted_value=sum(
            (
                weighted_forecast(record.expected_amount, record.probability)
                for record in records
                if record.stage not in CLOSED_STAGES
            ),
            ZERO,
        ),
    )


def bucket_by(records: Iterable[T], key: Callable[[T], Any | None], *, reverse: bool = False) -> dict[Any, list[T]]:
    """Group records by ``key``; records whose key is None are dropped. Keys come back sorted."""
    buckets: dict[Any, list[T]] = {}
    for record in records:
        bucket_key = key(record)
        if bucket_key is None:
            continue
        buckets.setdefault(bucket_key, []).append(record)
    return {bucket_key: buckets[bucket_key] for bucket_key in sorted(buckets, reverse=reverse)}


def _row_to_opportunity_aggregate(key: Any, row: AggregateRow) -> AggregateRecord:
    values = row.values
    avg_probability = values.get("avg_probability")
    return AggregateRecord(
        key=key,
        count=int(values.get("count_id") or 0),
        sum_amount=Decimal(values.get("sum_amount") or 0),
        sum_expected_amount=Decimal(values.get("sum_expected_amount") or 0),
        avg_probability=float(avg_probability) if avg_probability is not None else 0.0,
    )


def _row_to_proposal_aggregate(key: Any, row: AggregateRow) -> ProposalAggregate:
    values = row.values
    avg_discount = values.get("avg_discount_percent")
    return ProposalAggregate(
        key=key,
        count=int(values.get("count_id") or 0),
        sum_total_amount=Decimal(values.get("sum_total_amount") or 0),
        sum_discount_amount=Decimal(values.get("sum_discount_amount") or 0),
        avg_discount_percent=float(avg_discount) if avg_discount is not None else 0.0,
    )


@dataclass(slots=True)
class AggregationQueries:
    """Grouped partial aggregates over the injected store.

    Every method validates the filter first, so an inverted range surfaces as
    InvalidRangeError before any store call is made. Mappings are returned in
    key order; no matching records yields an empty mapping.
    """

    store: EntityStore

    def opportunity_where(self, pipeline_filter: PipelineFilter, *extra: Condition) -> list[Condition]:
        pipeline_filter.check_ranges()
        return [*pipeline_filter.opportunity_conditions(), *pipeline_filter.created_conditions(), *extra]

    def opportunities(
        self,
        pipeline_filter: PipelineFilter,
        *extra: Condition,
        order_by: Sequence[tuple[str, Any]] = (("created_at", "desc"), ("id", "asc")),
    ) -> list[OpportunityRecord]:
        return self.store.find_many(
            EntityKind.OPPORTUNITY,
            self.opportunity_where(pipeline_filter, *extra),
            order_by=order_by,
        )

    def count_opportunities(self, pipeline_filter: PipelineFilter, *extra: Condition) -> int:
        return self.store.count(EntityKind.OPPORTUNITY, self.opportunity_where(pipeline_filter, *extra))

    def opportunity_totals(self, pipeline_filter: PipelineFilter, *extra: Condition) -> AggregateRecord:
        rows = self.store.aggregate(
            EntityKind.OPPORTUNITY,
            self.opportunity_where(pipeline_filter, *extra),
            (),
            _OPPORTUNITY_AGGREGATIONS,
        )
        if not rows:
            return AggregateRecord(key=None)
        return _row_to_opportunity_aggregate(None, rows[0])

    def opportunities_by_stage(self, pipeline_filter: PipelineFilter, *extra: Condition) -> dict[str, AggregateRecord]:
        rows = self.store.aggregate(
            EntityKind.OPPORTUNITY,
            self.opportunity_where(pipeline_filter, *extra),
            ("stage",),
            _OPPORTUNITY_AGGREGATIONS,
        )
        grouped = {row.group["stage"]: _row_to_opportunity_aggregate(row.group["stage"], row) for row in rows}
        grouped = {stage: item for stage, item in grouped.items() if item.count > 0}
        return {stage: grouped[stage] for stage in sorted(grouped, key=lambda item: (stage_rank(item), item))}

    def opportunities_by_manager(
        self,
        pipeline_filter: PipelineFilter,
        *extra: Condition,
    ) -> dict[uuid.UUID | None, dict[str, AggregateRecord]]:
        """Per-manager stage breakdown: manager id -> stage -> aggregate."""
        rows = self.store.aggregate(
            EntityKind.OPPORTUNITY,
            self.opportunity_where(pipeline_filter, *extra),
            ("account_manager_id", "stage"),
            _OPPORTUNITY_AGGREGATIONS,
        )
        managers: dict[uuid.UUID | None, dict[str, AggregateRecord]] = {}
        for row in rows:
            manager_id = row.group["account_manager_id"]
            stage = row.group["stage"]
            managers.setdefault(manager_id, {})[stage] = _row_to_opportunity_aggregate(stage, row)
        ordered_ids = sorted(managers, key=lambda item: (item is None, str(item) if item is not None else ""))
        return {manager_id: managers[manager_id] for manager_id in ordered_ids}

    def opportunities_by_month(
        self,
        records: Iterable[OpportunityRecord],
        when: Callable[[OpportunityRecord], date | datetime | None],
    ) -> dict[str, AggregateRecord]:
        """Bucket already-fetched opportunities by calendar month of ``when``; undated records are skipped."""
        buckets = bucket_by(records, lambda record: month_key(value) if (value := when(record)) is not None else None)
        return {key: summarize_opportunities(key, members) for key, members in buckets.items()}

    def closed_deals(self, pipeline_filter: PipelineFilter) -> list[OpportunityRecord]:
        return self.opportunities(
            pipeline_filter,
            Condition("stage", "in", tuple(CLOSED_STAGES)),
            Condition("actual_close_date", "not_null"),
        )

    def open_deals_closing_between(
        self,
        pipeline_filter: PipelineFilter,
        start: date,
        end: date,
    ) -> list[OpportunityRecord]:
        _check_order("expected_close_date", start, end)
        return self.opportunities(
            pipeline_filter,
            Condition("stage", "not_in", tuple(CLOSED_STAGES)),
            Condition("expected_close_date", "not_null"),
            Condition("expected_close_date", "gte", start),
            Condition("expected_close_date", "lte", end),
            order_by=(("expected_close_date", "asc"), ("id", "asc")),
        )

    def scoped_opportunity_ids(self, pipeline_filter: PipelineFilter) -> list[uuid.UUID] | None:
        """Ids of opportunities matching the filter's scoping fields, or None when the filter is unscoped."""
        if not pipeline_filter.scopes_opportunities:
            return None
        records = self.store.find_many(
            EntityKind.OPPORTUNITY,
            pipeline_filter.opportunity_conditions(),
            order_by=(("id", "asc"),),
        )
        return [record.id for record in records]

    def stage_transitions(self, pipeline_filter: PipelineFilter, since: datetime) -> list[StageHistoryRecord]:
        pipeline_filter.check_ranges()
        where = [Condition("created_at", "gte", since)]
        scoped = self.scoped_opportunity_ids(pipeline_filter)
        if scoped is not None:
            where.append(Condition("opportunity_id", "in", tuple(scoped)))
        return self.store.find_many(
            EntityKind.STAGE_HISTORY,
            where,
            order_by=(("created_at", "asc"), ("id", "asc")),
        )

    def proposal_where(self, proposal_filter: ProposalFilter, *extra: Condition) -> list[Condition]:
        proposal_filter.check_ranges()
        where = [*proposal_filter.proposal_conditions(), *extra]
        scoped = self.scoped_opportunity_ids(proposal_filter)
        if scoped is not None:
            where.append(Condition("opportunity_id", "in", tuple(scoped)))
        return where

    def proposals(self, proposal_filter: ProposalFilter, *extra: Condition) -> list[ProposalRecord]:
        return self.store.find_many(
            EntityKind.PROPOSAL,
            self.proposal_where(proposal_filter, *extra),
            order_by=(("created_at", "desc"), ("id", "asc")),
        )

    def proposal_totals(self, proposal_filter: ProposalFilter) -> ProposalAggregate:
        rows = self.store.aggregate(EntityKind.PROPOSAL, self.proposal_where(proposal_filter), (), _PROPOSAL_AGGREGATIONS)
        if not rows:
            return ProposalAggregate(key=None)
        return _row_to_proposal_aggregate(None, rows[0])

    def proposals_by_status(self, proposal_filter: ProposalFilter) -> dict[str, ProposalAggregate]:
        rows = self.store.aggregate(
            EntityKind.PROPOSAL,
            self.proposal_where(proposal_filter),
            ("status",),
            _PROPOSAL_AGGREGATIONS,
        )
        grouped = {row.group["status"]: _row_to_proposal_aggregate(row.group["status"], row) for row in rows}
        grouped = {status: item for status, item in grouped.items() if item.count > 0}
        return {status: grouped[status] for status in sorted(grouped, key=_status_rank)}

    def proposals_by_template(self, proposal_filter: ProposalFilter) -> dict[uuid.UUID, ProposalAggregate]:
        rows = self.store.aggregate(
            EntityKind.PROPOSAL,
            self.proposal_where(proposal_filter, Condition("template_id", "not_null")),
            ("template_id",),
            _PROPOSAL_AGGREGATIONS,
        )
        grouped = {row.group["template_id"]: _row_to_proposal_aggregate(row.group["template_id"], row) for row in rows}
        return {template_id: grouped[template_id] for template_id in sorted(grouped, key=str)}


def _status_rank(status: str) -> tuple[int, str]:
    try:
        return PROPOSAL_STATUS_ORDER.index(status), status
    except ValueError:
        return len(PROPOSAL_STATUS_ORDER), status


def won(stage_breakdown: dict[str, AggregateRecord]) -> AggregateRecord:
    return stage_breakdown.get(OpportunityStage.CLOSED_WON, AggregateRecord(key=OpportunityStage.CLOSED_WON))


def lost(stage_breakdown: dict[str, AggregateRecord]) -> AggregateRecord:
    return stage_breakdown.get(OpportunityStage.CLOSED_LOST, AggregateRecord(key=OpportunityStage.CLOSED_LOST))
