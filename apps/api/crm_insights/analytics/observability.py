from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry.trace import Span

from crm_insights.metrics import observe_analytics_failure, observe_analytics_operation
from crm_insights.otel import get_tracer

logger = logging.getLogger("crm_insights.analytics")
tracer = get_tracer("crm_insights.analytics")


@contextmanager
def observed_operation(operation: str, *, company_id: uuid.UUID | None = None) -> Iterator[Span]:
    """Run one engine operation inside an ``analytics.<operation>`` span."""
    started = time.perf_counter()
    scope = {"operation": operation}
    if company_id is not None:
        scope["company_id"] = str(company_id)

    with tracer.start_as_current_span(f"analytics.{operation}") as span:
        span.set_attribute("analytics.operation", operation)
        if company_id is not None:
            span.set_attribute("company_id", str(company_id))
        try:
            yield span
        except Exception as exc:
            observe_analytics_failure(operation, type(exc).__name__)
            logger.info(
                "analytics.failed",
                extra={
                    **scope,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error": str(exc)[:500],
                },
            )
            raise

    duration = time.perf_counter() - started
    observe_analytics_operation(operation, duration)
    logger.info("analytics.computed", extra={**scope, "duration_ms": round(duration * 1000, 2)})
