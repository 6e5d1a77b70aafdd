from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from fieldops.core.auth import AuthUser, get_current_user
from fieldops.core.config import get_settings
from fieldops.lifecycle.api import maintenance_router, router as lifecycle_router
from fieldops.metrics import generate_metrics_payload, metrics_content_type

METRICS_READ_ROLE = "system.metrics.read"

router = APIRouter()
router.include_router(lifecycle_router)
router.include_router(maintenance_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_READ_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_READ_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
