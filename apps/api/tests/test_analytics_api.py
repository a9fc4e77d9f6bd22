from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_insights.core.config import get_settings
from crm_insights.core.database import Base, get_db
from crm_insights.main import app
from crm_insights.middleware.rate_limit import reset_rate_limiter

from factories import days_ago, make_activity, make_company, make_opportunity, make_user, persist


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(sub: str, roles: list[str]) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": sub, "roles": roles}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def company(db_session: Session):  # type: ignore[no-untyped-def]
    record = make_company()
    persist(
        db_session,
        record,
        make_opportunity(record.id, "CLOSED_WON", 100000, actual_close_date=days_ago(40)),
        make_opportunity(record.id, "CLOSED_WON", 200000, actual_close_date=days_ago(400), created_at=days_ago(430)),
        make_opportunity(record.id, "NEGOTIATION", 150000, probability=70),
        make_opportunity(record.id, "CLOSED_LOST", 50000, actual_close_date=days_ago(20)),
        make_activity(record.id, days_ago(3)),
    )
    return record


def test_customer_revenue_endpoint(client: TestClient, company) -> None:  # type: ignore[no-untyped-def]
    response = client.get(f"/api/analytics/customers/{company.id}/revenue")
    assert response.status_code == 200
    summary = response.json()["summary"]
    assert summary["total_revenue"] == "300000.00"
    assert summary["weighted_pipeline"] == "105000.00"
    assert summary["win_rate"] == 50.0
    assert summary["closed_win_rate"] == 66.67


@pytest.mark.parametrize("report", ["view", "interactions", "risk", "engagement", "analytics"])
def test_customer_reports_respond(client: TestClient, company, report: str) -> None:  # type: ignore[no-untyped-def]
    response = client.get(f"/api/analytics/customers/{company.id}/{report}")
    assert response.status_code == 200
    assert response.json()


@pytest.mark.parametrize("report", ["metrics", "proposals", "funnel", "forecast"])
def test_pipeline_reports_respond(client: TestClient, company, report: str) -> None:  # type: ignore[no-untyped-def]
    response = client.get(f"/api/analytics/pipeline/{report}")
    assert response.status_code == 200


def test_pipeline_metrics_over_http(client: TestClient, company) -> None:  # type: ignore[no-untyped-def]
    response = client.get("/api/analytics/pipeline/metrics", params={"company_id": str(company.id)})
    assert response.status_code == 200
    summary = response.json()["summary"]
    assert summary["total_opportunities"] == 4
    assert summary["total_revenue"] == "300000.00"
    assert summary["win_rate"] == 66.67


def test_unknown_company_returns_not_found_envelope(client: TestClient) -> None:
    missing = uuid.uuid4()
    response = client.get(f"/api/analytics/customers/{missing}/view", headers={"X-Correlation-Id": "view-404"})
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "customer_view_not_found"
    assert body["message"] == "Company not found"
    assert body["details"] == {"entity": "company", "id": str(missing)}
    assert body["correlation_id"] == "view-404"


def test_invalid_ranges_return_bad_request(client: TestClient, company) -> None:  # type: ignore[no-untyped-def]
    forecast = client.get("/api/analytics/pipeline/forecast", params={"months": 0})
    assert forecast.status_code == 400
    body = forecast.json()
    assert body["code"] == "sales_forecast_invalid_range"
    assert body["details"]["field"] == "months"

    inverted = client.get(
        "/api/analytics/pipeline/metrics",
        params={"date_from": "2026-06-10T00:00:00Z", "date_to": "2026-06-01T00:00:00Z"},
    )
    assert inverted.status_code == 400
    assert inverted.json()["code"] == "pipeline_metrics_invalid_range"

    limit = client.get(f"/api/analytics/customers/{company.id}/interactions", params={"limit": 0})
    assert limit.status_code == 400
    assert limit.json()["details"]["field"] == "limit"

    engagement = client.get(f"/api/analytics/customers/{company.id}/engagement", params={"days": -5})
    assert engagement.status_code == 400
    assert engagement.json()["code"] == "engagement_timeline_invalid_range"


def test_team_performance_requires_manager_role(client: TestClient, db_session: Session, company) -> None:  # type: ignore[no-untyped-def]
    manager = make_user()
    persist(
        db_session,
        manager,
        make_opportunity(company.id, "CLOSED_WON", 1000, account_manager_id=manager.id),
    )

    anonymous = client.get("/api/analytics/pipeline/team-performance")
    assert anonymous.status_code == 403
    assert anonymous.json()["code"] == "team_performance_forbidden"

    plain_user = client.get("/api/analytics/pipeline/team-performance", headers=_bearer("user-1", ["user"]))
    assert plain_user.status_code == 403

    allowed = client.get("/api/analytics/pipeline/team-performance", headers=_bearer("manager-1", ["Manager"]))
    assert allowed.status_code == 200
    members = allowed.json()["team_performance"]
    named = [member for member in members if member["account_manager_id"] == str(manager.id)]
    assert named[0]["name"] == "Sam Okafor"
    assert named[0]["won_deals"] == 1


def test_me_reflects_bearer_claims(client: TestClient) -> None:
    assert client.get("/me").json() == {"sub": "anonymous", "roles": ["guest"]}
    response = client.get("/me", headers=_bearer("admin-1", ["admin"]))
    assert response.json() == {"sub": "admin-1", "roles": ["admin"]}


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
