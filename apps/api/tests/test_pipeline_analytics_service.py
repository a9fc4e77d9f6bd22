from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest

from crm_insights.analytics.aggregation import PipelineFilter, ProposalFilter
from crm_insights.analytics.errors import InvalidRangeError
from crm_insights.analytics.pipeline import PipelineAnalyticsService, add_months
from crm_insights.analytics.settings import AnalyticsSettings
from crm_insights.analytics.store import InMemoryEntityStore

from factories import (
    days_ago,
    fixed_clock,
    in_days,
    make_opportunity,
    make_proposal,
    make_transition,
    make_user,
)


def _service(*records) -> PipelineAnalyticsService:  # type: ignore[no-untyped-def]
    return PipelineAnalyticsService(InMemoryEntityStore(records), AnalyticsSettings(), fixed_clock)


@pytest.fixture()
def company_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def pipeline_records(company_id: uuid.UUID) -> list:
    return [
        make_opportunity(company_id, "QUALIFYING", 1000, probability=20),
        make_opportunity(company_id, "PROPOSAL", 2000, expected_amount=Decimal("1500"), probability=50),
        make_opportunity(company_id, "CLOSED_WON", 3000, actual_close_date=days_ago(10)),
        make_opportunity(company_id, "CLOSED_LOST", 500, actual_close_date=days_ago(20)),
    ]


def test_empty_pipeline_reports_zeros_without_raising() -> None:
    metrics = _service().get_pipeline_metrics()

    assert metrics.stage_distribution == []
    summary = metrics.summary
    assert summary.total_opportunities == 0
    assert summary.total_pipeline_value == Decimal("0.00")
    assert summary.weighted_pipeline == Decimal("0.00")
    assert summary.average_deal_size == Decimal("0.00")
    assert summary.conversion_rate == 0.0
    assert summary.win_rate == 0.0
    assert summary.average_sales_cycle == 0
    assert metrics.velocity.stage_transitions == 0
    assert metrics.velocity.average_time_by_stage == []


def test_pipeline_summary_uses_canonical_values(pipeline_records: list) -> None:
    summary = _service(*pipeline_records).get_pipeline_metrics().summary

    assert summary.total_opportunities == 4
    assert summary.total_pipeline_value == Decimal("6000.00")
    assert summary.pipeline_value == Decimal("2500.00")
    assert summary.weighted_pipeline == Decimal("950.00")
    assert summary.total_revenue == Decimal("3000.00")
    assert summary.average_deal_size == Decimal("3000.00")
    assert summary.average_probability == 35.0
    assert summary.conversion_rate == 25.0
    assert summary.win_rate == 50.0
    assert summary.average_sales_cycle == 15


def test_stage_distribution_percentages_sum_to_one_hundred(pipeline_records: list) -> None:
    distribution = _service(*pipeline_records).get_pipeline_metrics().stage_distribution

    assert [item.stage for item in distribution] == ["QUALIFYING", "PROPOSAL", "CLOSED_WON", "CLOSED_LOST"]
    assert [item.percentage for item in distribution] == [16.67, 25.0, 50.0, 8.33]
    assert sum(item.percentage for item in distribution) == pytest.approx(100, abs=0.05)
    proposal = distribution[1]
    assert proposal.value == Decimal("1500.00")
    assert proposal.expected_value == Decimal("1500.00")


def test_velocity_averages_timed_transitions_only(company_id: uuid.UUID) -> None:
    opportunity = make_opportunity(company_id, "PROPOSAL", 100)
    service = _service(
        opportunity,
        make_transition(opportunity.id, "QUALIFYING", "NEEDS_ANALYSIS", duration_days=4),
        make_transition(opportunity.id, "QUALIFYING", "NEEDS_ANALYSIS", duration_days=7),
        make_transition(opportunity.id, "NEEDS_ANALYSIS", "PROPOSAL", duration_days=None),
        make_transition(opportunity.id, "PROPOSAL", "NEGOTIATION", created_at=days_ago(45)),
    )

    velocity = service.get_pipeline_metrics().velocity

    assert velocity.lookback_days == 30
    assert velocity.stage_transitions == 3
    assert len(velocity.average_time_by_stage) == 1
    qualifying = velocity.average_time_by_stage[0]
    assert qualifying.stage == "QUALIFYING"
    assert qualifying.average_days == 6
    assert qualifying.transitions == 2


def test_funnel_marks_bottlenecks_and_handles_empty_stages(company_id: uuid.UUID) -> None:
    records = [make_opportunity(company_id, "QUALIFYING", 100) for _ in range(4)]
    records += [make_opportunity(company_id, "NEEDS_ANALYSIS", 100) for _ in range(2)]
    records += [
        make_opportunity(company_id, "NEGOTIATION", 100),
        make_opportunity(company_id, "CLOSED_WON", 400),
        make_opportunity(company_id, "CLOSED_LOST", 900),
    ]

    funnel = _service(*records).get_funnel_analysis()

    assert [(stage.stage, stage.count) for stage in funnel.funnel] == [
        ("QUALIFYING", 4),
        ("NEEDS_ANALYSIS", 2),
        ("PROPOSAL", 0),
        ("NEGOTIATION", 1),
        ("CLOSED_WON", 1),
    ]
    assert [item.rate for item in funnel.conversion_rates] == [50.0, 0.0, 0.0, 100.0]
    assert [(item.from_stage, item.to_stage) for item in funnel.bottlenecks] == [("NEEDS_ANALYSIS", "PROPOSAL")]
    assert funnel.bottleneck_threshold == 50.0
    assert all(0 <= item.rate <= 100 for item in funnel.conversion_rates)


def test_funnel_reports_growth_when_a_later_stage_is_larger(company_id: uuid.UUID) -> None:
    records = [make_opportunity(company_id, "QUALIFYING", 100)]
    records += [make_opportunity(company_id, "NEEDS_ANALYSIS", 100) for _ in range(3)]

    funnel = _service(*records).get_funnel_analysis()

    first = funnel.conversion_rates[0]
    assert (first.from_stage, first.to_stage) == ("QUALIFYING", "NEEDS_ANALYSIS")
    assert first.rate == 300.0
    assert not first.is_bottleneck


def test_funnel_on_empty_pipeline_has_zero_rates() -> None:
    funnel = _service().get_funnel_analysis()
    assert [stage.count for stage in funnel.funnel] == [0, 0, 0, 0, 0]
    assert all(item.rate == 0.0 for item in funnel.conversion_rates)
    assert funnel.bottlenecks == []


def test_forecast_buckets_open_deals_inside_the_window(company_id: uuid.UUID) -> None:
    service = _service(
        make_opportunity(company_id, "PROPOSAL", 1000, probability=80, expected_close_date=in_days(5)),
        make_opportunity(company_id, "NEGOTIATION", 2000, probability=50, expected_close_date=date(2026, 7, 10)),
        make_opportunity(company_id, "QUALIFYING", 500, probability=90),
        make_opportunity(company_id, "PROPOSAL", 700, probability=90, expected_close_date=date(2026, 12, 1)),
        make_opportunity(company_id, "CLOSED_WON", 900, probability=100, expected_close_date=in_days(5)),
        make_opportunity(company_id, "PROPOSAL", 300, probability=71, expected_close_date=date(2026, 9, 15)),
        make_opportunity(company_id, "PROPOSAL", 400, probability=60, expected_close_date=in_days(-1)),
    )

    forecast = service.get_sales_forecast(3)

    assert forecast.period.from_date == date(2026, 6, 15)
    assert forecast.period.to_date == date(2026, 9, 15)
    assert [month.month for month in forecast.monthly_forecast] == ["2026-06", "2026-07", "2026-09"]
    june, july, september = forecast.monthly_forecast
    assert (june.pipeline_value, june.weighted_value, june.worst_case) == (
        Decimal("1000.00"),
        Decimal("800.00"),
        Decimal("1000.00"),
    )
    assert july.worst_case == Decimal("0.00")
    assert september.weighted_value == Decimal("213.00")
    assert forecast.totals.opportunities == 3
    assert forecast.totals.pipeline_value == Decimal("3300.00")
    assert forecast.totals.weighted_value == Decimal("2013.00")
    assert forecast.totals.best_case == Decimal("3300.00")
    assert forecast.totals.worst_case == Decimal("1300.00")
    for month in forecast.monthly_forecast:
        assert month.weighted_value <= month.pipeline_value
        assert month.worst_case <= month.best_case


@pytest.mark.parametrize("months", [0, -1, 25])
def test_forecast_rejects_months_outside_range(months: int) -> None:
    with pytest.raises(InvalidRangeError) as exc_info:
        _service().get_sales_forecast(months)
    assert exc_info.value.field == "months"


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


def test_team_performance_orders_by_value_then_manager_id(company_id: uuid.UUID) -> None:
    first = uuid.UUID(int=1)
    second = uuid.UUID(int=2)
    small = uuid.UUID(int=3)
    records = [
        make_user(id=first),
        make_opportunity(company_id, "CLOSED_WON", 3000, account_manager_id=first),
        make_opportunity(company_id, "CLOSED_LOST", 500, account_manager_id=first),
        make_opportunity(company_id, "QUALIFYING", 1000, account_manager_id=first),
        make_opportunity(company_id, "NEGOTIATION", 4500, account_manager_id=second),
        make_opportunity(company_id, "PROPOSAL", 4500),
        make_opportunity(company_id, "PROPOSAL", 100, account_manager_id=small),
    ]

    members = _service(*records).get_team_performance().team_performance

    assert [member.account_manager_id for member in members] == [first, second, None, small]
    top = members[0]
    assert top.name == "Sam Okafor"
    assert top.email == "sam@example.com"
    assert top.total_value == Decimal("4500.00")
    assert (top.total_opportunities, top.won_deals, top.lost_deals) == (3, 1, 1)
    assert top.win_rate == 50.0
    assert top.average_deal_size == Decimal("3000.00")
    assert members[1].name == "Unknown"
    assert members[1].email == ""


def test_team_performance_limit(company_id: uuid.UUID) -> None:
    records = [
        make_opportunity(company_id, "PROPOSAL", 100 * index, account_manager_id=uuid.uuid4()) for index in range(1, 5)
    ]
    service = _service(*records)
    assert len(service.get_team_performance(limit=2).team_performance) == 2
    with pytest.raises(InvalidRangeError):
        service.get_team_performance(limit=0)


def test_proposal_analytics(company_id: uuid.UUID) -> None:
    opportunity = make_opportunity(company_id, "PROPOSAL", 1000)
    first_template = uuid.UUID(int=10)
    second_template = uuid.UUID(int=20)
    created = days_ago(10)
    records = [
        opportunity,
        make_proposal(opportunity.id, "DRAFT", 100, created_at=created),
        make_proposal(
            opportunity.id,
            "PENDING_APPROVAL",
            200,
            discount_percent=Decimal("10"),
            discount_amount=Decimal("20"),
            created_at=created,
        ),
        make_proposal(
            opportunity.id,
            "ACCEPTED",
            300,
            template_id=first_template,
            discount_percent=Decimal("20"),
            discount_amount=Decimal("60"),
            created_at=created,
            approved_at=created + timedelta(hours=2),
        ),
        make_proposal(opportunity.id, "REJECTED", 400, template_id=first_template, created_at=created),
        make_proposal(
            opportunity.id,
            "APPROVED",
            500,
            template_id=second_template,
            created_at=created,
            approved_at=created + timedelta(hours=4),
        ),
    ]

    analytics = _service(*records).get_proposal_analytics()

    summary = analytics.summary
    assert summary.total_proposals == 5
    assert summary.total_value == Decimal("1500.00")
    assert summary.total_discounts == Decimal("80.00")
    assert summary.average_value == Decimal("300.00")
    assert summary.average_discount == 6.0
    assert summary.acceptance_rate == 50.0
    assert [item.status for item in analytics.status_distribution] == [
        "DRAFT",
        "PENDING_APPROVAL",
        "APPROVED",
        "ACCEPTED",
        "REJECTED",
    ]
    assert [(item.template_id, item.count, item.total_value) for item in analytics.template_performance] == [
        (first_template, 2, Decimal("700.00")),
        (second_template, 1, Decimal("500.00")),
    ]
    approval = analytics.approval_metrics
    assert (approval.submitted, approval.approved, approval.rejected, approval.pending) == (4, 2, 1, 1)
    assert approval.approval_rate == 50.0
    assert approval.average_approval_time_hours == 3.0


def test_proposal_filter_scopes_by_opportunity_and_amount(company_id: uuid.UUID) -> None:
    mine = make_opportunity(company_id, "PROPOSAL", 1000)
    theirs = make_opportunity(uuid.uuid4(), "PROPOSAL", 1000)
    service = _service(
        mine,
        theirs,
        make_proposal(mine.id, "SENT", 100),
        make_proposal(mine.id, "SENT", 900),
        make_proposal(theirs.id, "SENT", 500),
    )

    scoped = service.get_proposal_analytics(ProposalFilter(company_id=company_id, min_amount=Decimal("200")))
    assert scoped.summary.total_proposals == 1
    assert scoped.summary.total_value == Decimal("900.00")


def test_pipeline_filter_by_manager(company_id: uuid.UUID) -> None:
    manager = uuid.uuid4()
    service = _service(
        make_opportunity(company_id, "PROPOSAL", 100, account_manager_id=manager),
        make_opportunity(company_id, "PROPOSAL", 900),
    )
    summary = service.get_pipeline_metrics(PipelineFilter(account_manager_id=manager)).summary
    assert summary.total_opportunities == 1
    assert summary.pipeline_value == Decimal("100.00")


def test_pipeline_reports_are_idempotent(pipeline_records: list) -> None:
    service = _service(*pipeline_records)
    assert service.get_pipeline_metrics() == service.get_pipeline_metrics()
    assert service.get_funnel_analysis() == service.get_funnel_analysis()
    assert service.get_sales_forecast(6) == service.get_sales_forecast(6)
