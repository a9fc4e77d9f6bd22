from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_insights.context import reset_correlation_id, set_correlation_id
from crm_insights.core.config import get_settings
from crm_insights.core.database import Base, get_db
from crm_insights.logging import CorrelationIdFilter, JsonLogFormatter
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/analytics/customers/{uuid.uuid4()}/view"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "crm_insights.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/analytics/customers/{id}/view"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_operation_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    company = make_company()
    persist(db_session, company)

    response = client.get(f"/api/analytics/customers/{company.id}/analytics", headers={"X-Correlation-Id": "abc-456"})
    assert response.status_code == 200

    analytics_records = [record for record in caplog.records if record.name == "crm_insights.analytics"]
    assert any(
        record.getMessage() == "analytics.computed"
        and getattr(record, "operation", None) == "company_analytics"
        and getattr(record, "company_id", None) == str(company.id)
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in analytics_records
    )


def test_failed_operations_are_logged_with_error(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/analytics/pipeline/forecast", params={"months": 0})
    assert response.status_code == 400

    assert any(
        record.getMessage() == "analytics.failed"
        and getattr(record, "operation", None) == "sales_forecast"
        and "months must be between" in getattr(record, "error", "")
        for record in caplog.records
    )


def test_json_formatter_keeps_whitelisted_fields_only() -> None:
    record = logging.LogRecord("crm_insights.analytics", logging.INFO, __file__, 1, "analytics.computed", None, None)
    record.operation = "pipeline_metrics"
    record.duration_ms = 1.5
    record.password = "hunter2"

    token = set_correlation_id("fmt-1")
    try:
        CorrelationIdFilter().filter(record)
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["msg"] == "analytics.computed"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"operation": "pipeline_metrics", "duration_ms": 1.5}
