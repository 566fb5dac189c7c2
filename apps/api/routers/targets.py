"""Target catalog router."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import is_paid_mode, settings
from database import get_db
from routers.auth_scope import AuthContext, require_member
from services.catalog import TargetCatalog
from services.lifecycle import target_usage
from services.runtime import get_target_catalog

router = APIRouter()


@router.get("")
async def list_targets(
    auth: AuthContext = Depends(require_member),
    catalog: TargetCatalog = Depends(get_target_catalog),
    db: AsyncSession = Depends(get_db),
):
    """Enabled targets with live usage against their capacity."""
    return {
        "mode": "paid" if is_paid_mode() else "free",
        "package_days": list(settings.PACKAGE_DAYS),
        "trial_hours": settings.TRIAL_HOURS,
        "targets": await target_usage(catalog, db),
    }
