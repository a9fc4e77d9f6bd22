from __future__ import annotations

import heapq
import itertools
import math
import uuid
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from crm_insights.analytics.aggregation import AggregationQueries, InteractionFilter, bucket_by, month_key
from crm_insights.analytics.errors import InvalidRangeError
from crm_insights.analytics.health import (
    account_tier,
    churn_risk_level,
    churn_risk_score,
    compute_health_score,
    evaluate_risk_factors,
    industry_segment,
    is_decision_maker,
    lifecycle_segment,
    lifetime_value,
    overall_risk,
    size_segment,
    value_segment,
)
from crm_insights.analytics.observability import observed_operation
from crm_insights.analytics.primitives import (
    ZERO,
    average_deal_size,
    average_sales_cycle,
    conversion_rate,
    sales_cycle_days,
    weighted_forecast,
    win_rate,
)
from crm_insights.analytics.records import (
    ACTIVE_PROJECT_STATUSES,
    CLOSED_STAGES,
    ActivityRecord,
    ActivityType,
    CompanyRecord,
    EntityKind,
    NoteRecord,
    OpportunityRecord,
    OpportunityStage,
    ProjectRecord,
)
from crm_insights.analytics.reporting import as_percentage, quantize_money, round_days
from crm_insights.analytics.schemas import (
    BranchRead,
    CompanyAnalyticsRead,
    CompanySummaryRead,
    ContactRead,
    Customer360SummaryRead,
    Customer360ViewRead,
    CustomerSegmentRead,
    EngagementMonthRead,
    EngagementTimelineRead,
    FinancialsRead,
    HealthScoreRead,
    InteractionHistoryRead,
    InteractionItemRead,
    InteractionSummaryRead,
    MonthRevenueRead,
    NextActionRead,
    OpportunityBriefRead,
    OpportunityMetricsRead,
    RelationshipsRead,
    RevenueAnalyticsRead,
    RevenueSummaryRead,
    RiskAssessmentRead,
    TimelineActivityRead,
    TopOpportunitiesRead,
    YearRevenueRead,
)
from crm_insights.analytics.settings import AnalyticsSettings, Clock, utcnow
from crm_insights.analytics.store import Condition, EntityStore

RECENT_ACTIVITY_LIMIT = 10
RECENT_OPPORTUNITY_LIMIT = 5
CONTACT_PREVIEW_LIMIT = 10
DECISION_MAKER_LIMIT = 5
TOP_OPPORTUNITY_LIMIT = 5
_YEAR = timedelta(days=365)


def activity_item(activity: ActivityRecord) -> InteractionItemRead:
    return InteractionItemRead(
        id=activity.id,
        source="activity",
        type=activity.activity_type,
        date=activity.start_time,
        subject=activity.subject,
        description=activity.description,
        user_id=activity.user_id,
        contact_id=activity.contact_id,
    )


def note_item(note: NoteRecord) -> InteractionItemRead:
    return InteractionItemRead(
        id=note.id,
        source="note",
        type=ActivityType.NOTE.value,
        date=note.created_at,
        description=note.content,
        user_id=note.user_id,
    )


def merge_interactions(*streams: Iterable[InteractionItemRead]) -> Iterator[InteractionItemRead]:
    """K-way merge of streams already sorted newest first.

    Ties keep stream order, so an activity precedes a note logged at the same instant.
    """
    return heapq.merge(*streams, key=lambda item: item.date, reverse=True)


def whole_days(start: datetime, end: datetime) -> int:
    return math.floor((end - start).total_seconds() / 86400)


def close_time(opportunity: OpportunityRecord) -> datetime:
    return opportunity.actual_close_date or opportunity.created_at


def deal_value(opportunity: OpportunityRecord) -> Decimal:
    if opportunity.stage in CLOSED_STAGES:
        return opportunity.amount
    return opportunity.expected_amount


@dataclass(slots=True)
class _Deals:
    won: list[OpportunityRecord]
    lost: list[OpportunityRecord]
    active: list[OpportunityRecord]

    @classmethod
    def split(cls, opportunities: Iterable[OpportunityRecord]) -> _Deals:
        deals = cls([], [], [])
        for opportunity in opportunities:
            if opportunity.stage == OpportunityStage.CLOSED_WON:
                deals.won.append(opportunity)
            elif opportunity.stage == OpportunityStage.CLOSED_LOST:
                deals.lost.append(opportunity)
            else:
                deals.active.append(opportunity)
        return deals

    @property
    def total_revenue(self) -> Decimal:
        return sum((deal.amount for deal in self.won), ZERO)

    @property
    def pipeline_value(self) -> Decimal:
        return sum((deal.expected_amount for deal in self.active), ZERO)

    @property
    def weighted_pipeline(self) -> Decimal:
        return sum((weighted_forecast(deal.expected_amount, deal.probability) for deal in self.active), ZERO)


@dataclass(slots=True)
class Customer360Service:
    store: EntityStore
    settings: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    clock: Clock = utcnow

    def get_customer_360_view(self, company_id: uuid.UUID) -> Customer360ViewRead:
        with observed_operation("customer_360_view", company_id=company_id):
            company = self._company(company_id)
            now = self.clock()
            opportunities = self._opportunities(company_id)
            activities = self._activities(company_id)
            notes = self._notes(company_id)
            contacts = self.store.find_many(
                EntityKind.CONTACT,
                [Condition("company_id", "eq", company_id)],
                order_by=(("last_name", "asc"), ("first_name", "asc"), ("id", "asc")),
            )
            branches = self.store.find_many(
                EntityKind.BRANCH,
                [Condition("company_id", "eq", company_id)],
                order_by=(("name", "asc"), ("id", "asc")),
            )
            projects = self._projects(company_id)

            deals = _Deals.split(opportunities)
            total_revenue = deals.total_revenue
            past = [activity for activity in activities if activity.start_time <= now]
            upcoming = sorted(
                (activity for activity in activities if activity.start_time > now),
                key=lambda activity: (activity.start_time, str(activity.id)),
            )
            next_action = None
            if upcoming:
                next_action = NextActionRead(
                    type=upcoming[0].activity_type,
                    description=upcoming[0].subject,
                    due_date=upcoming[0].start_time,
                )

            decision_makers = [
                contact for contact in contacts if is_decision_maker(contact, self.settings.decision_maker_keywords)
            ][:DECISION_MAKER_LIMIT]
            recent = merge_interactions((activity_item(item) for item in past), (note_item(note) for note in notes))

            return Customer360ViewRead(
                company=CompanySummaryRead.model_validate(company),
                segments=self._segments(company, total_revenue, now),
                health_score=self._health(activities, deals.won, projects, now),
                summary=Customer360SummaryRead(
                    total_opportunities=len(opportunities),
                    active_opportunities=len(deals.active),
                    won_opportunities=len(deals.won),
                    total_revenue=quantize_money(total_revenue),
                    total_contacts=len(contacts),
                    last_interaction=past[0].start_time if past else None,
                    next_action=next_action,
                ),
                financials=FinancialsRead(
                    total_revenue=quantize_money(total_revenue),
                    pipeline_value=quantize_money(deals.pipeline_value),
                    average_deal_size=quantize_money(average_deal_size(total_revenue, len(deals.won))),
                ),
                relationships=RelationshipsRead(
                    branches=[BranchRead.model_validate(branch) for branch in branches],
                    contacts=[ContactRead.model_validate(contact) for contact in contacts[:CONTACT_PREVIEW_LIMIT]],
                    decision_makers=[ContactRead.model_validate(contact) for contact in decision_makers],
                ),
                recent_activities=list(itertools.islice(recent, RECENT_ACTIVITY_LIMIT)),
                recent_opportunities=[
                    OpportunityBriefRead.model_validate(opportunity)
                    for opportunity in opportunities[:RECENT_OPPORTUNITY_LIMIT]
                ],
            )

    def get_interaction_history(
        self,
        company_id: uuid.UUID,
        interaction_filter: InteractionFilter | None = None,
    ) -> InteractionHistoryRead:
        interaction_filter = interaction_filter or InteractionFilter()
        with observed_operation("interaction_history", company_id=company_id):
            interaction_filter.check_ranges()
            self._company(company_id)

            activity_where = [Condition("company_id", "eq", company_id)]
            activity_where.extend(_window("start_time", interaction_filter))
            if interaction_filter.activity_type is not None:
                activity_where.append(Condition("activity_type", "eq", interaction_filter.activity_type))
            if interaction_filter.user_id is not None:
                activity_where.append(Condition("user_id", "eq", interaction_filter.user_id))
            activities = self.store.find_many(
                EntityKind.ACTIVITY,
                activity_where,
                order_by=(("start_time", "desc"), ("id", "asc")),
            )

            notes: list[NoteRecord] = []
            if interaction_filter.activity_type in (None, ActivityType.NOTE):
                note_where = [Condition("company_id", "eq", company_id)]
                note_where.extend(_window("created_at", interaction_filter))
                if interaction_filter.user_id is not None:
                    note_where.append(Condition("user_id", "eq", interaction_filter.user_id))
                notes = self.store.find_many(
                    EntityKind.NOTE,
                    note_where,
                    order_by=(("created_at", "desc"), ("id", "asc")),
                )

            merged = list(
                merge_interactions((activity_item(item) for item in activities), (note_item(note) for note in notes))
            )
            items = merged if interaction_filter.limit is None else merged[: interaction_filter.limit]
            grouped = bucket_by(items, lambda item: item.date.date().isoformat(), reverse=True)
            types = [item.type for item in merged]
            return InteractionHistoryRead(
                company_id=company_id,
                total=len(merged),
                items=items,
                grouped_by_date={day: len(members) for day, members in grouped.items()},
                summary=InteractionSummaryRead(
                    calls=types.count(ActivityType.CALL),
                    emails=types.count(ActivityType.EMAIL),
                    meetings=types.count(ActivityType.MEETING),
                    notes=types.count(ActivityType.NOTE),
                ),
            )

    def get_revenue_analytics(self, company_id: uuid.UUID) -> RevenueAnalyticsRead:
        with observed_operation("revenue_analytics", company_id=company_id):
            self._company(company_id)
            now = self.clock()
            opportunities = self._opportunities(company_id)
            deals = _Deals.split(opportunities)
            total_revenue = deals.total_revenue
            closed = [*deals.won, *deals.lost]

            by_year = bucket_by(deals.won, lambda deal: close_time(deal).year)
            by_month = AggregationQueries(self.store).opportunities_by_month(deals.won, close_time)

            return RevenueAnalyticsRead(
                company_id=company_id,
                summary=RevenueSummaryRead(
                    total_revenue=quantize_money(total_revenue),
                    pipeline_value=quantize_money(deals.pipeline_value),
                    weighted_pipeline=quantize_money(deals.weighted_pipeline),
                    lost_value=quantize_money(sum((deal.amount for deal in deals.lost), ZERO)),
                    average_deal_size=quantize_money(average_deal_size(total_revenue, len(deals.won))),
                    average_sales_cycle=round_days(
                        average_sales_cycle(sales_cycle_days(deal.created_at, deal.actual_close_date) for deal in closed)
                    ),
                    win_rate=as_percentage(conversion_rate(len(opportunities), len(deals.won))),
                    closed_win_rate=as_percentage(win_rate(len(deals.won), len(deals.lost))),
                    total_opportunities=len(opportunities),
                    won_deals=len(deals.won),
                    lost_deals=len(deals.lost),
                    active_deals=len(deals.active),
                ),
                revenue_by_year=[
                    YearRevenueRead(
                        year=year,
                        revenue=quantize_money(sum((deal.amount for deal in members), ZERO)),
                        count=len(members),
                    )
                    for year, members in by_year.items()
                ],
                revenue_by_month=[
                    MonthRevenueRead(
                        month=month,
                        year=int(month[:4]),
                        revenue=quantize_money(aggregate.sum_amount),
                        count=aggregate.count,
                    )
                    for month, aggregate in by_month.items()
                ],
                opportunities=[self._opportunity_metrics(opportunity, now) for opportunity in opportunities],
                top_opportunities=TopOpportunitiesRead(
                    won=_briefs(deals.won),
                    active=_briefs(deals.active),
                    lost=_briefs(deals.lost),
                ),
            )

    def get_risk_assessment(self, company_id: uuid.UUID) -> RiskAssessmentRead:
        with observed_operation("risk_assessment", company_id=company_id):
            self._company(company_id)
            now = self.clock()
            deals = _Deals.split(self._opportunities(company_id))
            days_since = self._days_since_last_activity(company_id, now)

            window_start = now - timedelta(days=self.settings.risk_lost_deal_window_days)
            recent_lost = [
                deal for deal in deals.lost if (deal.actual_close_date or deal.updated_at or deal.created_at) >= window_start
            ]

            factors = evaluate_risk_factors(days_since, len(recent_lost), len(deals.active), self.settings)
            return RiskAssessmentRead(
                company_id=company_id,
                overall_risk=overall_risk(factors).value,
                risk_factors=factors,
                recommendations=[factor.recommendation for factor in factors],
                days_since_last_activity=days_since,
                recent_lost_deals=len(recent_lost),
                open_opportunities=len(deals.active),
                assessed_at=now,
            )

    def get_engagement_timeline(self, company_id: uuid.UUID, days: int = 90) -> EngagementTimelineRead:
        with observed_operation("engagement_timeline", company_id=company_id):
            if days < 1:
                raise InvalidRangeError("days", 1, days, message="days must be a positive integer")
            self._company(company_id)
            now = self.clock()
            activities = self.store.find_many(
                EntityKind.ACTIVITY,
                [
                    Condition("company_id", "eq", company_id),
                    Condition("start_time", "gte", now - timedelta(days=days)),
                    Condition("start_time", "lte", now),
                ],
                order_by=(("start_time", "desc"), ("id", "asc")),
            )
            buckets = bucket_by(activities, lambda activity: month_key(activity.start_time), reverse=True)
            return EngagementTimelineRead(
                company_id=company_id,
                days=days,
                months=[
                    EngagementMonthRead(
                        month=month,
                        year=int(month[:4]),
                        activities=[
                            TimelineActivityRead(
                                id=activity.id,
                                date=activity.start_time,
                                type=activity.activity_type,
                                subject=activity.subject,
                                user_id=activity.user_id,
                                contact_id=activity.contact_id,
                            )
                            for activity in members
                        ],
                        total_interactions=len(members),
                        unique_contacts=len({activity.contact_id for activity in members if activity.contact_id}),
                    )
                    for month, members in buckets.items()
                ],
            )

    def get_company_analytics(self, company_id: uuid.UUID) -> CompanyAnalyticsRead:
        with observed_operation("company_analytics", company_id=company_id):
            company = self._company(company_id)
            now = self.clock()
            deals = _Deals.split(self._opportunities(company_id))
            activities = self._activities(company_id)
            projects = self._projects(company_id)

            health = self._health(activities, deals.won, projects, now)
            days_since = self._days_since_last_activity(company_id, now)
            active_projects = sum(1 for project in projects if project.status in ACTIVE_PROJECT_STATUSES)
            churn = churn_risk_score(
                days_since_last_activity=days_since,
                open_opportunities=len(deals.active),
                health_score=health.overall,
                active_projects=active_projects,
            )
            total_revenue = deals.total_revenue
            account_age_days = max(whole_days(company.created_at, now), 0)
            return CompanyAnalyticsRead(
                company_id=company_id,
                health_score=health.overall,
                churn_risk=churn,
                churn_risk_level=churn_risk_level(churn).value,
                lifetime_value=quantize_money(lifetime_value(total_revenue, account_age_days, churn)),
                account_tier=account_tier(total_revenue, company.employee_count),
                total_revenue=quantize_money(total_revenue),
                days_since_last_activity=days_since,
                open_opportunities=len(deals.active),
                active_projects=active_projects,
                calculated_at=now,
            )

    def _company(self, company_id: uuid.UUID) -> CompanyRecord:
        return self.store.find_unique(EntityKind.COMPANY, company_id)

    def _opportunities(self, company_id: uuid.UUID) -> list[OpportunityRecord]:
        return self.store.find_many(
            EntityKind.OPPORTUNITY,
            [Condition("company_id", "eq", company_id)],
            order_by=(("created_at", "desc"), ("id", "asc")),
        )

    def _activities(self, company_id: uuid.UUID) -> list[ActivityRecord]:
        return self.store.find_many(
            EntityKind.ACTIVITY,
            [Condition("company_id", "eq", company_id)],
            order_by=(("start_time", "desc"), ("id", "asc")),
        )

    def _notes(self, company_id: uuid.UUID) -> list[NoteRecord]:
        return self.store.find_many(
            EntityKind.NOTE,
            [Condition("company_id", "eq", company_id)],
            order_by=(("created_at", "desc"), ("id", "asc")),
        )

    def _projects(self, company_id: uuid.UUID) -> list[ProjectRecord]:
        return self.store.find_many(
            EntityKind.PROJECT,
            [Condition("company_id", "eq", company_id)],
            order_by=(("created_at", "asc"), ("id", "asc")),
        )

    def _days_since_last_activity(self, company_id: uuid.UUID, now: datetime) -> int | None:
        latest = self.store.find_many(
            EntityKind.ACTIVITY,
            [Condition("company_id", "eq", company_id), Condition("start_time", "lte", now)],
            order_by=(("start_time", "desc"), ("id", "asc")),
            limit=1,
        )
        if not latest:
            return None
        return whole_days(latest[0].start_time, now)

    def _segments(self, company: CompanyRecord, total_revenue: Decimal, now: datetime) -> list[CustomerSegmentRead]:
        account_age_years = max(whole_days(company.created_at, now), 0) // 365
        segments = [size_segment(company.employee_count)]
        industry = industry_segment(company.industry)
        if industry is not None:
            segments.append(industry)
        segments.append(value_segment(total_revenue, self.settings))
        segments.append(lifecycle_segment(account_age_years, self.settings))
        return segments

    def _health(
        self,
        activities: Sequence[ActivityRecord],
        won: Sequence[OpportunityRecord],
        projects: Sequence[ProjectRecord],
        now: datetime,
    ) -> HealthScoreRead:
        engagement_start = now - timedelta(days=self.settings.health_engagement_window_days)
        recent_count = sum(1 for activity in activities if engagement_start <= activity.start_time <= now)
        current = sum((deal.amount for deal in won if now - _YEAR < close_time(deal) <= now), ZERO)
        previous = sum((deal.amount for deal in won if now - 2 * _YEAR < close_time(deal) <= now - _YEAR), ZERO)
        return compute_health_score(
            recent_activity_count=recent_count,
            current_revenue=current,
            previous_revenue=previous,
            projects=projects,
            settings=self.settings,
        )

    def _opportunity_metrics(self, opportunity: OpportunityRecord, now: datetime) -> OpportunityMetricsRead:
        is_open = opportunity.stage not in CLOSED_STAGES
        end = now if is_open else close_time(opportunity)
        days_in_pipeline = max(whole_days(opportunity.created_at, end), 0)
        return OpportunityMetricsRead(
            id=opportunity.id,
            title=opportunity.title,
            stage=opportunity.stage,
            amount=quantize_money(deal_value(opportunity)),
            probability=opportunity.probability,
            expected_close_date=opportunity.expected_close_date,
            days_in_pipeline=days_in_pipeline,
            is_stalled=is_open and days_in_pipeline > self.settings.stalled_opportunity_days,
        )


def _window(field_name: str, interaction_filter: InteractionFilter) -> list[Condition]:
    conditions = []
    if interaction_filter.date_from is not None:
        conditions.append(Condition(field_name, "gte", interaction_filter.date_from))
    if interaction_filter.date_to is not None:
        conditions.append(Condition(field_name, "lte", interaction_filter.date_to))
    return conditions


def _briefs(opportunities: Sequence[OpportunityRecord]) -> list[OpportunityBriefRead]:
    return [OpportunityBriefRead.model_validate(item) for item in opportunities[:TOP_OPPORTUNITY_LIMIT]]
