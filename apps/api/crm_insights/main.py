from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crm_insights.api.routes import router as api_router
from crm_insights.core.config import get_settings
from crm_insights.core.context import RequestContextMiddleware
from crm_insights.logging import configure_logging
from crm_insights.middleware.correlation_id import CorrelationIdMiddleware
from crm_insights.middleware.rate_limit import AnalyticsRateLimitMiddleware
from crm_insights.middleware.request_logging import RequestLoggingMiddleware
from crm_insights.otel import instrument_app, setup_otel

configure_logging()
logger = logging.getLogger("crm_insights.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("system.started", extra={"operation": "startup"})
    yield
    logger.info("system.stopped", extra={"operation": "shutdown"})


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(AnalyticsRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("crm-insights-api", True)

instrument_app(app)
