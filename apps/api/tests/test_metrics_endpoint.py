from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_insights.core.auth import AuthUser, get_current_user
from crm_insights.core.config import get_settings
from crm_insights.core.database import Base, get_db
from crm_insights.main import app
from crm_insights.middleware.rate_limit import reset_rate_limiter

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


def _client_for(db_session: Session, roles: list[str]) -> TestClient:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user
    return TestClient(app)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    with _client_for(db_session, ["system.metrics.read"]) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_analytics_metrics(client: TestClient, db_session: Session) -> None:
    company = make_company()
    persist(db_session, company)

    assert client.get("/health").status_code == 200
    assert client.get("/api/analytics/pipeline/metrics").status_code == 200
    assert client.get(f"/api/analytics/customers/{company.id}/risk").status_code == 200
    assert client.get("/api/analytics/pipeline/forecast", params={"months": 99}).status_code == 400

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "analytics_operation_duration_seconds" in body
    assert "analytics_operation_failures_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/analytics/customers/{id}/risk"' in body
    assert 'operation="pipeline_metrics"' in body
    assert 'operation="risk_assessment"' in body
    assert 'error="InvalidRangeError"' in body


def test_metrics_requires_permission(db_session: Session) -> None:
    with _client_for(db_session, ["user"]) as test_client:
        response = test_client.get("/metrics")
    app.dependency_overrides.clear()
    assert response.status_code == 403


def test_metrics_hidden_when_disabled(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    with _client_for(db_session, ["system.metrics.read"]) as test_client:
        response = test_client.get("/metrics")
    app.dependency_overrides.clear()
    assert response.status_code == 404
