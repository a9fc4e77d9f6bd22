from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class _ReadModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# Pipeline


class PipelineSummaryRead(_ReadModel):
    total_opportunities: int
    total_pipeline_value: Decimal
    pipeline_value: Decimal
    weighted_pipeline: Decimal
    total_revenue: Decimal
    average_probability: float
    average_deal_size: Decimal
    conversion_rate: float
    win_rate: float
    average_sales_cycle: int


class StageDistributionRead(_ReadModel):
    stage: str
    count: int
    value: Decimal
    expected_value: Decimal
    average_probability: float
    percentage: float


class StageVelocityRead(_ReadModel):
    stage: str
    average_days: int
    transitions: int


class PipelineVelocityRead(_ReadModel):
    lookback_days: int
    stage_transitions: int
    average_time_by_stage: list[StageVelocityRead]


class PipelineMetricsRead(_ReadModel):
    summary: PipelineSummaryRead
    stage_distribution: list[StageDistributionRead]
    velocity: PipelineVelocityRead


class FunnelStageRead(_ReadModel):
    stage: str
    count: int
    value: Decimal


class FunnelConversionRead(_ReadModel):
    from_stage: str
    to_stage: str
    rate: float
    is_bottleneck: bool


class FunnelAnalysisRead(_ReadModel):
    funnel: list[FunnelStageRead]
    conversion_rates: list[FunnelConversionRead]
    bottlenecks: list[FunnelConversionRead]
    bottleneck_threshold: float


class ForecastPeriodRead(_ReadModel):
    from_date: date
    to_date: date
    months: int


class ForecastTotalsRead(_ReadModel):
    opportunities: int
    pipeline_value: Decimal
    weighted_value: Decimal
    best_case: Decimal
    worst_case: Decimal


class ForecastMonthRead(ForecastTotalsRead):
    month: str


class SalesForecastRead(_ReadModel):
    period: ForecastPeriodRead
    totals: ForecastTotalsRead
    monthly_forecast: list[ForecastMonthRead]


class TeamMemberPerformanceRead(_ReadModel):
    account_manager_id: UUID | None
    name: str
    email: str
    total_opportunities: int
    total_value: Decimal
    won_deals: int
    lost_deals: int
    win_rate: float
    average_deal_size: Decimal


class TeamPerformanceRead(_ReadModel):
    team_performance: list[TeamMemberPerformanceRead]


class ProposalSummaryRead(_ReadModel):
    total_proposals: int
    total_value: Decimal
    total_discounts: Decimal
    average_value: Decimal
    average_discount: float
    acceptance_rate: float


class ProposalStatusRead(_ReadModel):
    status: str
    count: int
    value: Decimal
    average_discount: float


class TemplatePerformanceRead(_ReadModel):
    template_id: UUID
    count: int
    total_value: Decimal


class ApprovalMetricsRead(_ReadModel):
    submitted: int
    approved: int
    rejected: int
    pending: int
    approval_rate: float
    average_approval_time_hours: float


class ProposalAnalyticsRead(_ReadModel):
    summary: ProposalSummaryRead
    status_distribution: list[ProposalStatusRead]
    template_performance: list[TemplatePerformanceRead]
    approval_metrics: ApprovalMetricsRead


# Customer 360


class CompanySummaryRead(_ReadModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    name: str
    code: str | None = None
    industry: str | None = None
    website: str | None = None
    employee_count: int | None = None
    created_at: datetime


class CustomerSegmentRead(_ReadModel):
    type: str
    value: str
    description: str


class HealthFactorRead(_ReadModel):
    factor: str
    score: int
    weight: float
    description: str
    data_available: bool = True


class HealthScoreRead(_ReadModel):
    overall: int
    factors: list[HealthFactorRead]


class NextActionRead(_ReadModel):
    type: str
    description: str | None
    due_date: datetime


class Customer360SummaryRead(_ReadModel):
    total_opportunities: int
    active_opportunities: int
    won_opportunities: int
    total_revenue: Decimal
    total_contacts: int
    last_interaction: datetime | None
    next_action: NextActionRead | None


class FinancialsRead(_ReadModel):
    total_revenue: Decimal
    pipeline_value: Decimal
    average_deal_size: Decimal


class BranchRead(_ReadModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    name: str


class ContactRead(_ReadModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    branch_id: UUID | None = None
    first_name: str
    last_name: str
    email: str | None = None
    job_title: str | None = None
    is_key_contact: bool = False


class RelationshipsRead(_ReadModel):
    branches: list[BranchRead]
    contacts: list[ContactRead]
    decision_makers: list[ContactRead]


class OpportunityBriefRead(_ReadModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    title: str
    stage: str
    amount: Decimal
    expected_amount: Decimal
    probability: int | None = None
    expected_close_date: date | None = None
    actual_close_date: datetime | None = None
    created_at: datetime


class InteractionItemRead(_ReadModel):
    id: UUID
    source: str
    type: str
    date: datetime
    subject: str | None = None
    description: str | None = None
    user_id: UUID | None = None
    contact_id: UUID | None = None


class Customer360ViewRead(_ReadModel):
    company: CompanySummaryRead
    segments: list[CustomerSegmentRead]
    health_score: HealthScoreRead
    summary: Customer360SummaryRead
    financials: FinancialsRead
    relationships: RelationshipsRead
    recent_activities: list[InteractionItemRead]
    recent_opportunities: list[OpportunityBriefRead]


class InteractionSummaryRead(_ReadModel):
    calls: int
    emails: int
    meetings: int
    notes: int


class InteractionHistoryRead(_ReadModel):
    company_id: UUID
    total: int
    items: list[InteractionItemRead]
    grouped_by_date: dict[str, int]
    summary: InteractionSummaryRead


class RevenueSummaryRead(_ReadModel):
    total_revenue: Decimal
    pipeline_value: Decimal
    weighted_pipeline: Decimal
    lost_value: Decimal
    average_deal_size: Decimal
    average_sales_cycle: int
    win_rate: float
    closed_win_rate: float
    total_opportunities: int
    won_deals: int
    lost_deals: int
    active_deals: int


class YearRevenueRead(_ReadModel):
    year: int
    revenue: Decimal
    count: int


class MonthRevenueRead(YearRevenueRead):
    month: str


class OpportunityMetricsRead(_ReadModel):
    id: UUID
    title: str
    stage: str
    amount: Decimal
    probability: int | None
    expected_close_date: date | None
    days_in_pipeline: int
    is_stalled: bool


class TopOpportunitiesRead(_ReadModel):
    won: list[OpportunityBriefRead]
    active: list[OpportunityBriefRead]
    lost: list[OpportunityBriefRead]


class RevenueAnalyticsRead(_ReadModel):
    company_id: UUID
    summary: RevenueSummaryRead
    revenue_by_year: list[YearRevenueRead]
    revenue_by_month: list[MonthRevenueRead]
    opportunities: list[OpportunityMetricsRead]
    top_opportunities: TopOpportunitiesRead


class RiskFactorRead(_ReadModel):
    factor: str
    level: str
    description: str
    recommendation: str


class RiskAssessmentRead(_ReadModel):
    company_id: UUID
    overall_risk: str
    risk_factors: list[RiskFactorRead]
    recommendations: list[str]
    days_since_last_activity: int | None
    recent_lost_deals: int
    open_opportunities: int
    assessed_at: datetime


class TimelineActivityRead(_ReadModel):
    id: UUID
    date: datetime
    type: str
    subject: str | None = None
    user_id: UUID | None = None
    contact_id: UUID | None = None


class EngagementMonthRead(_ReadModel):
    month: str
    year: int
    activities: list[TimelineActivityRead]
    total_interactions: int
    unique_contacts: int


class EngagementTimelineRead(_ReadModel):
    company_id: UUID
    days: int
    months: list[EngagementMonthRead]


class CompanyAnalyticsRead(_ReadModel):
    company_id: UUID
    health_score: int
    churn_risk: float
    churn_risk_level: str
    lifetime_value: Decimal
    account_tier: str
    total_revenue: Decimal
    days_since_last_activity: int | None
    open_opportunities: int
    active_projects: int
    calculated_at: datetime
