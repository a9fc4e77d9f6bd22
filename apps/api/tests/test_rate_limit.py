from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_insights.core.config import get_settings
from crm_insights.core.database import Base, get_db
from crm_insights.main import app
from crm_insights.middleware.rate_limit import reset_rate_limiter, resolve_route_group

from factories import make_company, persist


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_ANALYTICS_PER_MINUTE", "3")
    monkeypatch.setenv("RATE_LIMIT_HEAVY_ANALYTICS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_analytics_reads_are_rate_limited(client: TestClient) -> None:
    responses = [client.get("/api/analytics/pipeline/metrics") for _ in range(5)]

    assert [response.status_code for response in responses[:3]] == [200, 200, 200]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["details"]["route_group"] == "metrics"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_heavy_reports_have_a_smaller_budget(client: TestClient) -> None:
    first = client.get("/api/analytics/pipeline/forecast", headers={"X-Correlation-Id": "corr-rate-1"})
    assert first.status_code == 200

    second = client.get("/api/analytics/pipeline/forecast", headers={"X-Correlation-Id": "corr-rate-1"})
    assert second.status_code == 429
    assert second.json()["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"

    assert client.get("/api/analytics/pipeline/funnel").status_code == 200


def test_route_groups_are_budgeted_separately(client: TestClient, db_session: Session) -> None:
    company = make_company()
    persist(db_session, company)

    for _ in range(3):
        assert client.get(f"/api/analytics/customers/{company.id}/risk").status_code == 200
    assert client.get(f"/api/analytics/customers/{company.id}/risk").status_code == 429
    assert client.get(f"/api/analytics/customers/{company.id}/view").status_code == 200


def test_system_endpoints_are_not_rate_limited(client: TestClient) -> None:
    responses = [client.get("/health") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_resolve_route_group() -> None:
    company_id = uuid.uuid4()
    assert resolve_route_group("/api/analytics/pipeline/team-performance") == "team-performance"
    assert resolve_route_group(f"/api/analytics/customers/{company_id}/view") == "customers.view"
    assert resolve_route_group("/api/analytics") == "analytics"
