from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crm_insights.analytics.aggregation import InteractionFilter, PipelineFilter, ProposalFilter
from crm_insights.analytics.customer360 import Customer360Service
from crm_insights.analytics.errors import AnalyticsError, InvalidRangeError, NotFoundError
from crm_insights.analytics.pipeline import PipelineAnalyticsService
from crm_insights.analytics.repository import SqlAlchemyEntityStore
from crm_insights.analytics.schemas import (
    CompanyAnalyticsRead,
    Customer360ViewRead,
    EngagementTimelineRead,
    FunnelAnalysisRead,
    InteractionHistoryRead,
    PipelineMetricsRead,
    ProposalAnalyticsRead,
    RevenueAnalyticsRead,
    RiskAssessmentRead,
    SalesForecastRead,
    TeamPerformanceRead,
)
from crm_insights.analytics.settings import AnalyticsSettings
from crm_insights.context import get_correlation_id
from crm_insights.core.auth import AuthUser, get_current_user
from crm_insights.core.config import get_settings
from crm_insights.core.database import get_db

pipeline_router = APIRouter(prefix="/api/analytics/pipeline", tags=["analytics", "pipeline"])
customers_router = APIRouter(prefix="/api/analytics/customers", tags=["analytics", "customers"])

TEAM_PERFORMANCE_ROLES = ("admin", "manager")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def analytics_error_response(request: Request, exc: AnalyticsError, *, code_prefix: str) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code=f"{code_prefix}_not_found",
            message=str(exc),
            details={"entity": exc.entity_kind, "id": str(exc.entity_id)},
        )
    if isinstance(exc, InvalidRangeError):
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code=f"{code_prefix}_invalid_range",
            message=str(exc),
            details={"field": exc.field, "lower": _jsonable(exc.lower), "upper": _jsonable(exc.upper)},
        )
    raise exc


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, uuid.UUID, Decimal)):
        return str(value)
    return value


def get_entity_store(db: Session = Depends(get_db)) -> SqlAlchemyEntityStore:
    return SqlAlchemyEntityStore(db)


def get_analytics_settings() -> AnalyticsSettings:
    return AnalyticsSettings.from_settings(get_settings())


def get_pipeline_service(
    store: SqlAlchemyEntityStore = Depends(get_entity_store),
    settings: AnalyticsSettings = Depends(get_analytics_settings),
) -> PipelineAnalyticsService:
    return PipelineAnalyticsService(store=store, settings=settings)


def get_customer_service(
    store: SqlAlchemyEntityStore = Depends(get_entity_store),
    settings: AnalyticsSettings = Depends(get_analytics_settings),
) -> Customer360Service:
    return Customer360Service(store=store, settings=settings)


def require_any_role(user: AuthUser, roles: tuple[str, ...]) -> None:
    normalized = {role.lower() for role in user.roles}
    if not normalized.intersection(roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing role: {' or '.join(roles)}")


def pipeline_filter_params(
    sales_team_id: uuid.UUID | None = Query(default=None),
    account_manager_id: uuid.UUID | None = Query(default=None),
    company_id: uuid.UUID | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
) -> PipelineFilter:
    return PipelineFilter(
        sales_team_id=sales_team_id,
        account_manager_id=account_manager_id,
        company_id=company_id,
        date_from=date_from,
        date_to=date_to,
    )


@pipeline_router.get("/metrics", response_model=PipelineMetricsRead)
def pipeline_metrics(
    request: Request,
    pipeline_filter: PipelineFilter = Depends(pipeline_filter_params),
    service: PipelineAnalyticsService = Depends(get_pipeline_service),
    user: AuthUser = Depends(get_current_user),
) -> PipelineMetricsRead | JSONResponse:
    try:
        return service.get_pipeline_metrics(pipeline_filter)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="pipeline_metrics")


@pipeline_router.get("/proposals", response_model=ProposalAnalyticsRead)
def proposal_analytics(
    request: Request,
    pipeline_filter: PipelineFilter = Depends(pipeline_filter_params),
    template_id: uuid.UUID | None = Query(default=None),
    min_amount: Decimal | None = Query(default=None),
    max_amount: Decimal | None = Query(default=None),
    service: PipelineAnalyticsService = Depends(get_pipeline_service),
    user: AuthUser = Depends(get_current_user),
) -> ProposalAnalyticsRead | JSONResponse:
    proposal_filter = ProposalFilter(
        **pipeline_filter.model_dump(),
        template_id=template_id,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    try:
        return service.get_proposal_analytics(proposal_filter)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="proposal_analytics")


@pipeline_router.get("/funnel", response_model=FunnelAnalysisRead)
def funnel_analysis(
    request: Request,
    pipeline_filter: PipelineFilter = Depends(pipeline_filter_params),
    service: PipelineAnalyticsService = Depends(get_pipeline_service),
    user: AuthUser = Depends(get_current_user),
) -> FunnelAnalysisRead | JSONResponse:
    try:
        return service.get_funnel_analysis(pipeline_filter)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="funnel_analysis")


@pipeline_router.get("/forecast", response_model=SalesForecastRead)
def sales_forecast(
    request: Request,
    months: int = Query(default=3),
    pipeline_filter: PipelineFilter = Depends(pipeline_filter_params),
    service: PipelineAnalyticsService = Depends(get_pipeline_service),
    user: AuthUser = Depends(get_current_user),
) -> SalesForecastRead | JSONResponse:
    try:
        return service.get_sales_forecast(months, pipeline_filter)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="sales_forecast")


@pipeline_router.get("/team-performance", response_model=TeamPerformanceRead)
def team_performance(
    request: Request,
    limit: int | None = Query(default=None),
    pipeline_filter: PipelineFilter = Depends(pipeline_filter_params),
    service: PipelineAnalyticsService = Depends(get_pipeline_service),
    user: AuthUser = Depends(get_current_user),
) -> TeamPerformanceRead | JSONResponse:
    try:
        require_any_role(user, TEAM_PERFORMANCE_ROLES)
        return service.get_team_performance(pipeline_filter, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="team_performance_forbidden",
            message=str(exc.detail),
            details=exc.detail,
        )
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="team_performance")


@customers_router.get("/{company_id}/view", response_model=Customer360ViewRead)
def customer_360_view(
    request: Request,
    company_id: uuid.UUID,
    service: Customer360Service = Depends(get_customer_service),
    user: AuthUser = Depends(get_current_user),
) -> Customer360ViewRead | JSONResponse:
    try:
        return service.get_customer_360_view(company_id)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="customer_view")


@customers_router.get("/{company_id}/interactions", response_model=InteractionHistoryRead)
def interaction_history(
    request: Request,
    company_id: uuid.UUID,
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    activity_type: str | None = Query(default=None),
    user_id: uuid.UUID | None = Query(default=None),
    limit: int | None = Query(default=None),
    service: Customer360Service = Depends(get_customer_service),
    user: AuthUser = Depends(get_current_user),
) -> InteractionHistoryRead | JSONResponse:
    interaction_filter = InteractionFilter(
        date_from=date_from,
        date_to=date_to,
        activity_type=activity_type,
        user_id=user_id,
        limit=limit,
    )
    try:
        return service.get_interaction_history(company_id, interaction_filter)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="interaction_history")


@customers_router.get("/{company_id}/revenue", response_model=RevenueAnalyticsRead)
def revenue_analytics(
    request: Request,
    company_id: uuid.UUID,
    service: Customer360Service = Depends(get_customer_service),
    user: AuthUser = Depends(get_current_user),
) -> RevenueAnalyticsRead | JSONResponse:
    try:
        return service.get_revenue_analytics(company_id)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="revenue_analytics")


@customers_router.get("/{company_id}/risk", response_model=RiskAssessmentRead)
def risk_assessment(
    request: Request,
    company_id: uuid.UUID,
    service: Customer360Service = Depends(get_customer_service),
    user: AuthUser = Depends(get_current_user),
) -> RiskAssessmentRead | JSONResponse:
    try:
        return service.get_risk_assessment(company_id)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="risk_assessment")


@customers_router.get("/{company_id}/engagement", response_model=EngagementTimelineRead)
def engagement_timeline(
    request: Request,
    company_id: uuid.UUID,
    days: int = Query(default=90),
    service: Customer360Service = Depends(get_customer_service),
    user: AuthUser = Depends(get_current_user),
) -> EngagementTimelineRead | JSONResponse:
    try:
        return service.get_engagement_timeline(company_id, days)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="engagement_timeline")


@customers_router.get("/{company_id}/analytics", response_model=CompanyAnalyticsRead)
def company_analytics(
    request: Request,
    company_id: uuid.UUID,
    service: Customer360Service = Depends(get_customer_service),
    user: AuthUser = Depends(get_current_user),
) -> CompanyAnalyticsRead | JSONResponse:
    try:
        return service.get_company_analytics(company_id)
    except AnalyticsError as exc:
        return analytics_error_response(request, exc, code_prefix="company_analytics")
