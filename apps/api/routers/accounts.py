"""Account provisioning and renewal router."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import ACCOUNT_KIND_PAID, ACCOUNT_KIND_TRIAL
from routers.auth_scope import AuthContext, require_member
from routers.rate_limit import rate_limit
from services.lifecycle import LifecycleEngine, list_user_accounts, serialize_account
from services.runtime import get_lifecycle_engine
from services.stats import account_creation_stats

router = APIRouter()


class ProvisionRequest(BaseModel):
    target_id: str = Field(min_length=1, max_length=64)
    secret: str = Field(max_length=128)
    days: int


class TrialRequest(BaseModel):
    target_id: str = Field(min_length=1, max_length=64)
    secret: str = Field(max_length=128)


class RenewRequest(BaseModel):
    days: int


@router.post("", status_code=201)
async def provision_account(
    request: ProvisionRequest,
    _rate_limit: None = Depends(rate_limit("accounts_provision", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(require_member),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
    db: AsyncSession = Depends(get_db),
):
    account = await engine.provision(
        db,
        user_id=auth.user_id,
        target_id=request.target_id,
        secret=request.secret,
        duration_days=request.days,
        kind=ACCOUNT_KIND_PAID,
    )
    return serialize_account(account)


@router.post("/trial", status_code=201)
async def provision_trial(
    request: TrialRequest,
    _rate_limit: None = Depends(rate_limit("accounts_trial", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(require_member),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
    db: AsyncSession = Depends(get_db),
):
    account = await engine.provision(
        db,
        user_id=auth.user_id,
        target_id=request.target_id,
        secret=request.secret,
        kind=ACCOUNT_KIND_TRIAL,
    )
    return serialize_account(account)


@router.post("/{account_ref}/renew")
async def renew_account(
    account_ref: str,
    request: RenewRequest,
    _rate_limit: None = Depends(rate_limit("accounts_renew", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(require_member),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
    db: AsyncSession = Depends(get_db),
):
    expires_at = await engine.renew(
        db,
        account_ref=account_ref,
        caller_user_id=auth.user_id,
        extra_days=request.days,
        is_admin=auth.is_admin,
    )
    return {"ok": True, "expires_at": expires_at.isoformat(), "days": request.days}


@router.get("")
async def my_accounts(
    auth: AuthContext = Depends(require_member),
    db: AsyncSession = Depends(get_db),
):
    accounts = await list_user_accounts(auth.user_id, db)
    return {"accounts": [serialize_account(account) for account in accounts]}


@router.get("/stats")
async def my_account_stats(
    auth: AuthContext = Depends(require_member),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
    db: AsyncSession = Depends(get_db),
):
    return await account_creation_stats(db, now=engine.clock(), user_id=auth.user_id)
