from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from crm_insights.analytics.api import customers_router, pipeline_router
from crm_insights.core.auth import AuthUser, get_current_user
from crm_insights.core.config import get_settings
from crm_insights.metrics import generate_metrics_payload, metrics_content_type

METRICS_ROLE = "system.metrics.read"

router = APIRouter()
router.include_router(pipeline_router)
router.include_router(customers_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {"sub": user.sub, "roles": user.roles}


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
