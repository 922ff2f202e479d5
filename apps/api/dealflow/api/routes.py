from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from dealflow.core.auth import AuthUser, get_current_user
from dealflow.core.config import get_settings
from dealflow.crm.api import fields_router, import_export_router, investors_router, leads_router
from dealflow.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(fields_router)
router.include_router(leads_router)
router.include_router(investors_router)
router.include_router(import_export_router)


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
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
