"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import is_paid_mode, settings
from database import engine
from services.catalog import TargetCatalog
from services.credential_store import CredentialStore, CredentialStoreError
from services.runtime import get_credential_store, get_target_catalog

router = APIRouter()

# Probe secret that is never a valid credential (contains a comma).
_PROBE_SECRET = "__health,probe__"


@router.get("/health")
async def health_check(
    credential_store: CredentialStore = Depends(get_credential_store),
    catalog: TargetCatalog = Depends(get_target_catalog),
):
    """
    Health check endpoint.
    Reports database and credential store reachability plus catalog size.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "mode": "paid" if is_paid_mode() else "free",
        "database": "unknown",
        "credential_store": "unknown",
        "targets": len(catalog.list()),
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except (SQLAlchemyError, OSError) as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        await credential_store.exists(_PROBE_SECRET)
        health_status["credential_store"] = "up"
    except CredentialStoreError as e:
        health_status["credential_store"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if is_paid_mode():
        if not settings.PAKASIR_PROJECT:
            missing.append("PAKASIR_PROJECT")
        if not settings.PAKASIR_API_KEY:
            missing.append("PAKASIR_API_KEY")
        if not settings.WEBHOOK_TOKEN:
            missing.append("WEBHOOK_TOKEN")
    if not settings.SERVICE_API_KEY:
        missing.append("SERVICE_API_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
