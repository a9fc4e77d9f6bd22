from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from crm_insights.analytics.health import (
    RiskLevel,
    account_tier,
    churn_risk_level,
    churn_risk_score,
    compute_health_score,
    engagement_score,
    evaluate_risk_factors,
    industry_segment,
    is_decision_maker,
    lifecycle_segment,
    lifetime_value,
    overall_risk,
    project_success_score,
    revenue_growth_score,
    size_segment,
    value_segment,
)
from crm_insights.analytics.settings import AnalyticsSettings

from factories import make_contact, make_project

SETTINGS = AnalyticsSettings()


@pytest.mark.parametrize(
    ("count", "expected"),
    [(0, 10), (1, 30), (3, 50), (5, 70), (7, 85), (10, 100), (25, 100)],
)
def test_engagement_score_steps(count: int, expected: int) -> None:
    assert engagement_score(count) == expected


def test_revenue_growth_score() -> None:
    assert revenue_growth_score(Decimal("0"), Decimal("0")) == 50
    assert revenue_growth_score(Decimal("10"), Decimal("0")) == 100
    assert revenue_growth_score(Decimal("150"), Decimal("100")) == 75
    assert revenue_growth_score(Decimal("0"), Decimal("100")) == 0
    assert revenue_growth_score(Decimal("400"), Decimal("100")) == 100


def test_project_success_ignores_cancelled_projects() -> None:
    company_id = uuid.uuid4()
    assert project_success_score([]) == 50
    assert project_success_score([make_project(company_id, "CANCELLED")]) == 50
    projects = [
        make_project(company_id, "COMPLETED"),
        make_project(company_id, "COMPLETED"),
        make_project(company_id, "IN_PROGRESS"),
        make_project(company_id, "CANCELLED"),
    ]
    assert project_success_score(projects) == 67


def test_health_score_is_weighted_and_bounded() -> None:
    health = compute_health_score(
        recent_activity_count=12,
        current_revenue=Decimal("500"),
        previous_revenue=Decimal("0"),
        projects=[],
        settings=SETTINGS,
    )
    assert sum(factor.weight for factor in health.factors) == pytest.approx(1.0)
    assert health.overall == 78
    assert [factor.data_available for factor in health.factors] == [True, True, True, False, False]


@pytest.mark.parametrize(
    ("employees", "expected"),
    [(None, "Standard"), (10, "Starter"), (50, "Small Business"), (100, "Mid-Market"), (250, "Large"), (1000, "Enterprise")],
)
def test_size_segment(employees: int | None, expected: str) -> None:
    assert size_segment(employees).value == expected


@pytest.mark.parametrize(
    ("revenue", "expected"),
    [
        ("10000000", "Transactional"),
        ("10000001", "Growth"),
        ("50000000", "Growth"),
        ("50000001", "Key Account"),
        ("100000001", "Strategic"),
    ],
)
def test_value_segment_thresholds_are_exclusive(revenue: str, expected: str) -> None:
    assert value_segment(Decimal(revenue), SETTINGS).value == expected


def test_lifecycle_and_industry_segments() -> None:
    assert lifecycle_segment(0, SETTINGS).value == "New Customer"
    assert lifecycle_segment(2, SETTINGS).value == "Growing Customer"
    assert lifecycle_segment(3, SETTINGS).value == "Established Customer"
    assert industry_segment(None) is None
    assert industry_segment("Logistics").description == "Operating in Logistics industry"


def test_decision_maker_by_title_or_flag() -> None:
    company_id = uuid.uuid4()
    keywords = SETTINGS.decision_maker_keywords
    assert is_decision_maker(make_contact(company_id, job_title="vp of sales"), keywords)
    assert is_decision_maker(make_contact(company_id, is_key_contact=True), keywords)
    assert not is_decision_maker(make_contact(company_id, job_title="Analyst"), keywords)
    assert not is_decision_maker(make_contact(company_id), keywords)


def test_risk_factors_follow_engagement_thresholds() -> None:
    assert evaluate_risk_factors(30, 0, 2, SETTINGS) == []
    low = evaluate_risk_factors(31, 0, 2, SETTINGS)
    assert [factor.factor for factor in low] == ["Low Engagement"]
    assert low[0].description == "Last interaction 31 days ago"
    high = evaluate_risk_factors(91, 2, 0, SETTINGS)
    assert [factor.level for factor in high] == ["HIGH", "MEDIUM", "MEDIUM"]
    assert high[1].description == "2 deals lost in last 90 days"
    assert overall_risk(high) is RiskLevel.HIGH
    assert overall_risk(low) is RiskLevel.MEDIUM
    assert overall_risk([]) is RiskLevel.LOW


def test_churn_risk_score_accumulates_and_caps() -> None:
    assert churn_risk_score(days_since_last_activity=5, open_opportunities=3, health_score=80, active_projects=2) == 0.0
    assert churn_risk_score(days_since_last_activity=45, open_opportunities=1, health_score=45, active_projects=1) == 0.35
    worst = churn_risk_score(days_since_last_activity=None, open_opportunities=0, health_score=10, active_projects=0)
    assert worst == 1.0
    assert churn_risk_level(0.7) is RiskLevel.HIGH
    assert churn_risk_level(0.4) is RiskLevel.MEDIUM
    assert churn_risk_level(0.39) is RiskLevel.LOW


@pytest.mark.parametrize(
    ("days", "expected"),
    [(None, 0.4), (90, 0.4), (89, 0.25), (60, 0.25), (59, 0.1), (30, 0.1), (29, 0.0)],
)
def test_churn_inactivity_cutoffs(days: int | None, expected: float) -> None:
    score = churn_risk_score(days_since_last_activity=days, open_opportunities=2, health_score=80, active_projects=1)
    assert score == expected


def test_lifetime_value_projects_annual_revenue() -> None:
    assert lifetime_value(Decimal("100000"), 365, 0.0) == Decimal("500000")
    assert lifetime_value(Decimal("100000"), 100, 1.0) == Decimal("100000")
    assert lifetime_value(Decimal("0"), 3000, 0.2) == Decimal("0")


@pytest.mark.parametrize(
    ("revenue", "employees", "expected"),
    [
        ("6000000", 5, "ENTERPRISE"),
        ("0", 1500, "ENTERPRISE"),
        ("1000000", None, "KEY_ACCOUNT"),
        ("600000", 10, "MID_MARKET"),
        ("100000", 10, "SMB"),
        ("99999", 49, "STARTER"),
    ],
)
def test_account_tier(revenue: str, employees: int | None, expected: str) -> None:
    assert account_tier(Decimal(revenue), employees) == expected
