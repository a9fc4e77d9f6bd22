from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_insights.context import get_correlation_id
from crm_insights.core.auth import ANONYMOUS, decode_bearer_claims
from crm_insights.core.config import get_settings
from crm_insights.metrics import observe_rate_limited

logger = logging.getLogger("crm_insights.request")

ANALYTICS_PREFIX = "/api/analytics"
HEAVY_ROUTES = frozenset({"forecast", "funnel", "team-performance"})


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            bucket = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(capacity), bucket.tokens + elapsed * refill_rate)
            bucket.last_refill = now

            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / refill_rate))

            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class AnalyticsRateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket per (user, route group) over analytics reads."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if settings.rate_limit_disabled or request.method.upper() != "GET" or not path.startswith(ANALYTICS_PREFIX):
            return await call_next(request)

        route_group = resolve_route_group(path)
        capacity = (
            settings.rate_limit_heavy_analytics_per_minute
            if route_group in HEAVY_ROUTES
            else settings.rate_limit_analytics_per_minute
        )
        user_id = _resolve_user_id(request)
        allowed, retry_after = _limiter.take(
            user_id=user_id,
            route_group=route_group,
            capacity=capacity,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        observe_rate_limited(route_group)
        logger.warning("http.rate_limited", extra={"route_group": route_group, "user_id": user_id})
        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"route_group": route_group, "retry_after": retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def resolve_route_group(path: str) -> str:
    parts = [part for part in path[len(ANALYTICS_PREFIX):].split("/") if part]
    if not parts:
        return "analytics"
    if parts[0] == "pipeline" and len(parts) > 1:
        return parts[1]
    if parts[0] == "customers" and len(parts) > 2:
        return f"customers.{parts[2]}"
    return parts[0]


def _resolve_user_id(request: Request) -> str:
    claims = decode_bearer_claims(request.headers.get("authorization", ""))
    if claims is None or claims.get("sub") is None:
        return ANONYMOUS
    return str(claims["sub"])


def reset_rate_limiter() -> None:
    _limiter.clear()
