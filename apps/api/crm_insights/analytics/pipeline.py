from __future__ import annotations

import calendar
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from crm_insights.analytics.aggregation import (
    AggregateRecord,
    AggregationQueries,
    PipelineFilter,
    ProposalFilter,
    bucket_by,
    lost,
    month_key,
    summarize_opportunities,
    won,
)
from crm_insights.analytics.errors import InvalidRangeError
from crm_insights.analytics.observability import observed_operation
from crm_insights.analytics.primitives import (
    ZERO,
    average,
    average_deal_size,
    average_sales_cycle,
    conversion_rate,
    sales_cycle_days,
    share,
    stage_conversion,
    win_rate,
)
from crm_insights.analytics.records import (
    CLOSED_STAGES,
    FUNNEL_STAGES,
    EntityKind,
    OpportunityRecord,
    ProposalStatus,
    UserRecord,
    stage_rank,
)
from crm_insights.analytics.reporting import as_percentage, quantize_money, round_days, round_hours, round_ratio
from crm_insights.analytics.schemas import (
    ApprovalMetricsRead,
    ForecastMonthRead,
    ForecastPeriodRead,
    ForecastTotalsRead,
    FunnelAnalysisRead,
    FunnelConversionRead,
    FunnelStageRead,
    PipelineMetricsRead,
    PipelineSummaryRead,
    PipelineVelocityRead,
    ProposalAnalyticsRead,
    ProposalStatusRead,
    ProposalSummaryRead,
    SalesForecastRead,
    StageDistributionRead,
    StageVelocityRead,
    TeamMemberPerformanceRead,
    TeamPerformanceRead,
    TemplatePerformanceRead,
)
from crm_insights.analytics.settings import AnalyticsSettings, Clock, utcnow
from crm_insights.analytics.store import Condition, EntityStore

_OPEN = Condition("stage", "not_in", tuple(CLOSED_STAGES))


def stage_value(stage: str, aggregate: AggregateRecord) -> Decimal:
    """Closed stages are valued at ``amount``; open stages at the current ``expected_amount`` estimate."""
    if stage in CLOSED_STAGES:
        return aggregate.sum_amount
    return aggregate.sum_expected_amount


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass(slots=True)
class PipelineAnalyticsService:
    store: EntityStore
    settings: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    clock: Clock = utcnow

    @property
    def queries(self) -> AggregationQueries:
        return AggregationQueries(self.store)

    def get_pipeline_metrics(self, pipeline_filter: PipelineFilter | None = None) -> PipelineMetricsRead:
        pipeline_filter = pipeline_filter or PipelineFilter()
        with observed_operation("pipeline_metrics"):
            queries = self.queries
            by_stage = queries.opportunities_by_stage(pipeline_filter)
            totals = queries.opportunity_totals(pipeline_filter)
            open_deals = queries.opportunities(pipeline_filter, _OPEN)
            closed_deals = queries.closed_deals(pipeline_filter)

            total_count = sum(item.count for item in by_stage.values())
            won_deals = won(by_stage)
            lost_deals = lost(by_stage)
            values = {stage: stage_value(stage, item) for stage, item in by_stage.items()}
            total_value = sum(values.values(), ZERO)
            open_summary = summarize_opportunities("open", open_deals)

            summary = PipelineSummaryRead(
                total_opportunities=total_count,
                total_pipeline_value=quantize_money(total_value),
                pipeline_value=quantize_money(open_summary.sum_expected_amount),
                weighted_pipeline=quantize_money(open_summary.weighted_value),
                total_revenue=quantize_money(won_deals.sum_amount),
                average_probability=round_ratio(totals.avg_probability, 2),
                average_deal_size=quantize_money(average_deal_size(won_deals.sum_amount, won_deals.count)),
                conversion_rate=as_percentage(conversion_rate(total_count, won_deals.count)),
                win_rate=as_percentage(win_rate(won_deals.count, lost_deals.count)),
                average_sales_cycle=round_days(
                    average_sales_cycle(sales_cycle_days(deal.created_at, deal.actual_close_date) for deal in closed_deals)
                ),
            )
            distribution = [
                StageDistributionRead(
                    stage=stage,
                    count=item.count,
                    value=quantize_money(values[stage]),
                    expected_value=quantize_money(item.sum_expected_amount),
                    average_probability=round_ratio(item.avg_probability, 2),
                    percentage=as_percentage(share(values[stage], total_value)),
                )
                for stage, item in by_stage.items()
            ]
            return PipelineMetricsRead(
                summary=summary,
                stage_distribution=distribution,
                velocity=self._velocity(queries, pipeline_filter),
            )

    def get_proposal_analytics(self, proposal_filter: ProposalFilter | None = None) -> ProposalAnalyticsRead:
        proposal_filter = proposal_filter or ProposalFilter()
        with observed_operation("proposal_analytics"):
            queries = self.queries
            totals = queries.proposal_totals(proposal_filter)
            by_status = queries.proposals_by_status(proposal_filter)
            by_template = queries.proposals_by_template(proposal_filter)
            proposals = queries.proposals(proposal_filter)

            accepted_count = by_status[ProposalStatus.ACCEPTED].count if ProposalStatus.ACCEPTED in by_status else 0
            rejected_count = by_status[ProposalStatus.REJECTED].count if ProposalStatus.REJECTED in by_status else 0
            average_value = totals.sum_total_amount / totals.count if totals.count else ZERO

            submitted = [proposal for proposal in proposals if proposal.status != ProposalStatus.DRAFT]
            approved = [proposal for proposal in proposals if proposal.approved_at is not None]
            approval_hours = [
                (proposal.approved_at - proposal.created_at).total_seconds() / 3600
                for proposal in approved
                if proposal.approved_at is not None
            ]

            templates = sorted(by_template.values(), key=lambda item: (-item.sum_total_amount, str(item.key)))
            return ProposalAnalyticsRead(
                summary=ProposalSummaryRead(
                    total_proposals=totals.count,
                    total_value=quantize_money(totals.sum_total_amount),
                    total_discounts=quantize_money(totals.sum_discount_amount),
                    average_value=quantize_money(average_value),
                    average_discount=round_ratio(totals.avg_discount_percent, 2),
                    acceptance_rate=as_percentage(win_rate(accepted_count, rejected_count)),
                ),
                status_distribution=[
                    ProposalStatusRead(
                        status=status,
                        count=item.count,
                        value=quantize_money(item.sum_total_amount),
                        average_discount=round_ratio(item.avg_discount_percent, 2),
                    )
                    for status, item in by_status.items()
                ],
                template_performance=[
                    TemplatePerformanceRead(
                        template_id=item.key,
                        count=item.count,
                        total_value=quantize_money(item.sum_total_amount),
                    )
                    for item in templates
                ],
                approval_metrics=ApprovalMetricsRead(
                    submitted=len(submitted),
                    approved=len(approved),
                    rejected=rejected_count,
                    pending=sum(1 for proposal in proposals if proposal.status == ProposalStatus.PENDING_APPROVAL),
                    approval_rate=as_percentage(share(len(approved), len(submitted))),
                    average_approval_time_hours=round_hours(average(approval_hours)),
                ),
            )

    def get_funnel_analysis(self, pipeline_filter: PipelineFilter | None = None) -> FunnelAnalysisRead:
        pipeline_filter = pipeline_filter or PipelineFilter()
        with observed_operation("funnel_analysis"):
            by_stage = self.queries.opportunities_by_stage(pipeline_filter, Condition("stage", "in", FUNNEL_STAGES))
            funnel = []
            for stage in FUNNEL_STAGES:
                item = by_stage.get(stage, AggregateRecord(key=stage))
                funnel.append(FunnelStageRead(stage=stage, count=item.count, value=quantize_money(stage_value(stage, item))))

            threshold = self.settings.funnel_bottleneck_threshold
            conversions = []
            for current, following in zip(funnel, funnel[1:]):
                rate = stage_conversion(current.count, following.count)
                conversions.append(
                    FunnelConversionRead(
                        from_stage=current.stage,
                        to_stage=following.stage,
                        rate=as_percentage(rate),
                        # an empty stage has nothing to convert, so it cannot be a bottleneck
                        is_bottleneck=current.count > 0 and rate < threshold,
                    )
                )
            return FunnelAnalysisRead(
                funnel=funnel,
                conversion_rates=conversions,
                bottlenecks=[item for item in conversions if item.is_bottleneck],
                bottleneck_threshold=as_percentage(threshold),
            )

    def get_sales_forecast(self, months: int = 3, pipeline_filter: PipelineFilter | None = None) -> SalesForecastRead:
        pipeline_filter = pipeline_filter or PipelineFilter()
        with observed_operation("sales_forecast"):
            max_months = self.settings.forecast_max_months
            if months < 1 or months > max_months:
                raise InvalidRangeError("months", 1, months, message=f"months must be between 1 and {max_months}")

            today = self.clock().date()
            until = add_months(today, months)
            deals = self.queries.open_deals_closing_between(pipeline_filter, today, until)
            buckets = bucket_by(
                deals,
                lambda deal: month_key(deal.expected_close_date) if deal.expected_close_date is not None else None,
            )
            monthly = [self._forecast_month(month, members) for month, members in buckets.items()]
            return SalesForecastRead(
                period=ForecastPeriodRead(from_date=today, to_date=until, months=months),
                totals=ForecastTotalsRead(
                    opportunities=sum(item.opportunities for item in monthly),
                    pipeline_value=quantize_money(sum((item.pipeline_value for item in monthly), ZERO)),
                    weighted_value=quantize_money(sum((item.weighted_value for item in monthly), ZERO)),
                    best_case=quantize_money(sum((item.best_case for item in monthly), ZERO)),
                    worst_case=quantize_money(sum((item.worst_case for item in monthly), ZERO)),
                ),
                monthly_forecast=monthly,
            )

    def get_team_performance(
        self,
        pipeline_filter: PipelineFilter | None = None,
        *,
        limit: int | None = None,
    ) -> TeamPerformanceRead:
        pipeline_filter = pipeline_filter or PipelineFilter()
        with observed_operation("team_performance"):
            if limit is not None and limit < 1:
                raise InvalidRangeError("limit", 1, limit, message="limit must be a positive integer")

            by_manager = self.queries.opportunities_by_manager(pipeline_filter)
            users = self._users([manager_id for manager_id in by_manager if manager_id is not None])

            members = []
            for manager_id, stages in by_manager.items():
                won_deals = won(stages)
                lost_deals = lost(stages)
                user = users.get(manager_id) if manager_id is not None else None
                members.append(
                    TeamMemberPerformanceRead(
                        account_manager_id=manager_id,
                        name=f"{user.first_name} {user.last_name}" if user is not None else "Unknown",
                        email=(user.email or "") if user is not None else "",
                        total_opportunities=sum(item.count for item in stages.values()),
                        total_value=quantize_money(sum((stage_value(stage, item) for stage, item in stages.items()), ZERO)),
                        won_deals=won_deals.count,
                        lost_deals=lost_deals.count,
                        win_rate=as_percentage(win_rate(won_deals.count, lost_deals.count)),
                        average_deal_size=quantize_money(average_deal_size(won_deals.sum_amount, won_deals.count)),
                    )
                )

            members.sort(
                key=lambda item: (
                    -item.total_value,
                    item.account_manager_id is None,
                    str(item.account_manager_id or ""),
                )
            )
            if limit is not None:
                members = members[:limit]
            return TeamPerformanceRead(team_performance=members)

    def _velocity(self, queries: AggregationQueries, pipeline_filter: PipelineFilter) -> PipelineVelocityRead:
        lookback_days = self.settings.velocity_lookback_days
        since = self.clock() - timedelta(days=lookback_days)
        transitions = queries.stage_transitions(pipeline_filter, since)
        timed = bucket_by(
            (item for item in transitions if item.duration_days is not None),
            lambda item: item.from_stage,
        )
        ordered = sorted(timed, key=lambda stage: (stage_rank(stage), stage))
        return PipelineVelocityRead(
            lookback_days=lookback_days,
            stage_transitions=len(transitions),
            average_time_by_stage=[
                StageVelocityRead(
                    stage=stage,
                    average_days=round_days(average(item.duration_days or 0 for item in timed[stage])),
                    transitions=len(timed[stage]),
                )
                for stage in ordered
            ],
        )

    def _forecast_month(self, month: str, deals: Sequence[OpportunityRecord]) -> ForecastMonthRead:
        aggregate = summarize_opportunities(month, deals)
        commit = self.settings.forecast_commit_probability
        worst_case = sum(
            (deal.expected_amount for deal in deals if deal.probability is not None and deal.probability > commit),
            ZERO,
        )
        return ForecastMonthRead(
            month=month,
            opportunities=aggregate.count,
            pipeline_value=quantize_money(aggregate.sum_expected_amount),
            weighted_value=quantize_money(aggregate.weighted_value),
            best_case=quantize_money(aggregate.sum_expected_amount),
            worst_case=quantize_money(worst_case),
        )

    def _users(self, user_ids: list[uuid.UUID]) -> dict[uuid.UUID, UserRecord]:
        if not user_ids:
            return {}
        records = self.store.find_many(EntityKind.USER, [Condition("id", "in", tuple(user_ids))])
        return {record.id: record for record in records}
