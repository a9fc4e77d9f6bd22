from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum

from crm_insights.analytics.primitives import growth_rate
from crm_insights.analytics.records import ContactRecord, ProjectRecord, ProjectStatus
from crm_insights.analytics.schemas import (
    CustomerSegmentRead,
    HealthFactorRead,
    HealthScoreRead,
    RiskFactorRead,
)
from crm_insights.analytics.settings import AnalyticsSettings


class RiskLevel(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


_SEVERITY = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class RiskFactor(StrEnum):
    NO_RECENT_ENGAGEMENT = "No Recent Engagement"
    LOW_ENGAGEMENT = "Low Engagement"
    RECENT_LOST_DEALS = "Recent Lost Deals"
    NO_ACTIVE_OPPORTUNITIES = "No active opportunities"


@dataclass(frozen=True, slots=True)
class RiskRule:
    level: RiskLevel
    recommendation: str


RISK_RULES: dict[RiskFactor, RiskRule] = {
    RiskFactor.NO_RECENT_ENGAGEMENT: RiskRule(RiskLevel.HIGH, "Schedule a check-in call or meeting"),
    RiskFactor.LOW_ENGAGEMENT: RiskRule(RiskLevel.MEDIUM, "Increase touchpoint frequency"),
    RiskFactor.RECENT_LOST_DEALS: RiskRule(RiskLevel.MEDIUM, "Analyze loss reasons and address concerns"),
    RiskFactor.NO_ACTIVE_OPPORTUNITIES: RiskRule(RiskLevel.MEDIUM, "Identify new opportunities with the account"),
}


def evaluate_risk_factors(
    days_since_last_activity: int | None,
    recent_lost_deals: int,
    open_opportunities: int,
    settings: AnalyticsSettings,
) -> list[RiskFactorRead]:
    """Triggered factors in evaluation order. ``None`` days means the company has no activity at all."""
    triggered: list[tuple[RiskFactor, str]] = []
    if days_since_last_activity is None:
        triggered.append((RiskFactor.NO_RECENT_ENGAGEMENT, "No recorded interactions"))
    elif days_since_last_activity > settings.risk_no_engagement_days:
        triggered.append((RiskFactor.NO_RECENT_ENGAGEMENT, f"No interaction in {days_since_last_activity} days"))
    elif days_since_last_activity > settings.risk_low_engagement_days:
        triggered.append((RiskFactor.LOW_ENGAGEMENT, f"Last interaction {days_since_last_activity} days ago"))

    if recent_lost_deals > 0:
        triggered.append(
            (
                RiskFactor.RECENT_LOST_DEALS,
                f"{recent_lost_deals} deals lost in last {settings.risk_lost_deal_window_days} days",
            )
        )
    if open_opportunities == 0:
        triggered.append((RiskFactor.NO_ACTIVE_OPPORTUNITIES, "No open opportunities with this account"))

    return [
        RiskFactorRead(
            factor=factor.value,
            level=RISK_RULES[factor].level.value,
            description=description,
            recommendation=RISK_RULES[factor].recommendation,
        )
        for factor, description in triggered
    ]


def overall_risk(factors: Iterable[RiskFactorRead]) -> RiskLevel:
    level = RiskLevel.LOW
    for factor in factors:
        candidate = RiskLevel(factor.level)
        if _SEVERITY[candidate] > _SEVERITY[level]:
            level = candidate
    return level


# Health score

HEALTH_WEIGHTS: dict[str, float] = {
    "Engagement Level": 0.25,
    "Revenue Growth": 0.30,
    "Project Success": 0.20,
    "Payment History": 0.15,
    "Support Tickets": 0.10,
}

_ENGAGEMENT_STEPS: tuple[tuple[int, int], ...] = ((10, 100), (7, 85), (5, 70), (3, 50), (1, 30))


def engagement_score(recent_activity_count: int) -> int:
    for minimum, score in _ENGAGEMENT_STEPS:
        if recent_activity_count >= minimum:
            return score
    return 10


def revenue_growth_score(current_revenue: Decimal, previous_revenue: Decimal) -> int:
    if current_revenue <= 0 and previous_revenue <= 0:
        return 50
    if previous_revenue <= 0:
        return 100
    score = 50 + 50 * growth_rate(current_revenue, previous_revenue)
    return _round_half_up(min(max(score, 0.0), 100.0))


def project_success_score(projects: Sequence[ProjectRecord]) -> int:
    counted = [project for project in projects if project.status != ProjectStatus.CANCELLED]
    if not counted:
        return 50
    completed = sum(1 for project in counted if project.status == ProjectStatus.COMPLETED)
    return _round_half_up(completed / len(counted) * 100)


def compute_health_score(
    *,
    recent_activity_count: int,
    current_revenue: Decimal,
    previous_revenue: Decimal,
    projects: Sequence[ProjectRecord],
    settings: AnalyticsSettings,
) -> HealthScoreRead:
    neutral = settings.health_neutral_factor_score
    factors = [
        HealthFactorRead(
            factor="Engagement Level",
            score=engagement_score(recent_activity_count),
            weight=HEALTH_WEIGHTS["Engagement Level"],
            description=f"{recent_activity_count} interactions in the last {settings.health_engagement_window_days} days",
        ),
        HealthFactorRead(
            factor="Revenue Growth",
            score=revenue_growth_score(current_revenue, previous_revenue),
            weight=HEALTH_WEIGHTS["Revenue Growth"],
            description="Won revenue in the trailing year against the year before",
        ),
        HealthFactorRead(
            factor="Project Success",
            score=project_success_score(projects),
            weight=HEALTH_WEIGHTS["Project Success"],
            description="Completed projects among non-cancelled projects",
        ),
        HealthFactorRead(
            factor="Payment History",
            score=neutral,
            weight=HEALTH_WEIGHTS["Payment History"],
            description="No payment data recorded; neutral score applied",
            data_available=False,
        ),
        HealthFactorRead(
            factor="Support Tickets",
            score=neutral,
            weight=HEALTH_WEIGHTS["Support Tickets"],
            description="No support data recorded; neutral score applied",
            data_available=False,
        ),
    ]
    overall = sum(factor.score * factor.weight for factor in factors)
    return HealthScoreRead(overall=_round_half_up(overall), factors=factors)


# Segmentation

_SIZE_STEPS: tuple[tuple[int, str], ...] = (
    (1000, "Enterprise"),
    (250, "Large"),
    (100, "Mid-Market"),
    (50, "Small Business"),
)


def size_segment(employee_count: int | None) -> CustomerSegmentRead:
    if employee_count is None:
        return CustomerSegmentRead(type="SIZE", value="Standard", description="Standard customer segment")
    value = "Starter"
    for minimum, label in _SIZE_STEPS:
        if employee_count >= minimum:
            value = label
            break
    return CustomerSegmentRead(type="SIZE", value=value, description=f"{value} organisation ({employee_count} employees)")


def industry_segment(industry: str | None) -> CustomerSegmentRead | None:
    if not industry:
        return None
    return CustomerSegmentRead(type="INDUSTRY", value=industry, description=f"Operating in {industry} industry")


def value_segment(total_revenue: Decimal, settings: AnalyticsSettings) -> CustomerSegmentRead:
    if total_revenue > settings.segment_strategic_revenue:
        value = "Strategic"
    elif total_revenue > settings.segment_key_account_revenue:
        value = "Key Account"
    elif total_revenue > settings.segment_growth_revenue:
        value = "Growth"
    else:
        value = "Transactional"
    return CustomerSegmentRead(type="VALUE", value=value, description=f"{value} account based on revenue contribution")


def lifecycle_segment(account_age_years: int, settings: AnalyticsSettings) -> CustomerSegmentRead:
    if account_age_years < settings.lifecycle_new_years:
        value = "New Customer"
    elif account_age_years < settings.lifecycle_growing_years:
        value = "Growing Customer"
    else:
        value = "Established Customer"
    return CustomerSegmentRead(type="LIFECYCLE", value=value, description=f"{value} ({account_age_years} years)")


def is_decision_maker(contact: ContactRecord, keywords: Iterable[str]) -> bool:
    if contact.is_key_contact:
        return True
    title = (contact.job_title or "").lower()
    return any(keyword.lower() in title for keyword in keywords)


# Churn, lifetime value and tier


CHURN_INACTIVITY_STEPS: tuple[tuple[int, float], ...] = ((90, 0.40), (60, 0.25), (30, 0.10))
CHURN_OPEN_OPPORTUNITY_WEIGHTS: dict[int, float] = {0: 0.30, 1: 0.15}
CHURN_LOW_HEALTH_STEPS: tuple[tuple[int, float], ...] = ((30, 0.20), (50, 0.10))
CHURN_NO_ACTIVE_PROJECTS_WEIGHT = 0.10
CHURN_LEVEL_STEPS: tuple[tuple[float, RiskLevel], ...] = ((0.7, RiskLevel.HIGH), (0.4, RiskLevel.MEDIUM))
LIFETIME_HORIZON_YEARS = 5


def churn_risk_score(
    *,
    days_since_last_activity: int | None,
    open_opportunities: int,
    health_score: int,
    active_projects: int,
) -> float:
    score = 0.0
    days = days_since_last_activity
    if days is None:
        score += CHURN_INACTIVITY_STEPS[0][1]
    else:
        score += next((weight for minimum, weight in CHURN_INACTIVITY_STEPS if days >= minimum), 0.0)

    score += CHURN_OPEN_OPPORTUNITY_WEIGHTS.get(open_opportunities, 0.0)
    score += next((weight for ceiling, weight in CHURN_LOW_HEALTH_STEPS if health_score <= ceiling), 0.0)

    if active_projects == 0:
        score += CHURN_NO_ACTIVE_PROJECTS_WEIGHT
    return round(min(score, 1.0), 2)


def churn_risk_level(score: float) -> RiskLevel:
    for minimum, level in CHURN_LEVEL_STEPS:
        if score >= minimum:
            return level
    return RiskLevel.LOW


def lifetime_value(total_won_revenue: Decimal, account_age_days: int, churn_risk: float) -> Decimal:
    age_years = max(Decimal(account_age_days) / Decimal(365), Decimal(1))
    annual = Decimal(total_won_revenue) / age_years
    expected_years = max(1, _round_half_up(LIFETIME_HORIZON_YEARS * (1 - churn_risk)))
    return annual * expected_years


TIER_STEPS: tuple[tuple[Decimal, int, str], ...] = (
    (Decimal("5000000"), 1000, "ENTERPRISE"),
    (Decimal("1000000"), 250, "KEY_ACCOUNT"),
    (Decimal("500000"), 100, "MID_MARKET"),
    (Decimal("100000"), 50, "SMB"),
)


def account_tier(total_revenue: Decimal, employee_count: int | None) -> str:
    employees = employee_count or 0
    for revenue_floor, employee_floor, tier in TIER_STEPS:
        if total_revenue >= revenue_floor or employees >= employee_floor:
            return tier
    return "STARTER"


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

