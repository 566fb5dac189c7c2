"""Administrator operations: account management, manual credit, sweep trigger."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.account import Account
from routers.auth_scope import AuthContext, require_admin
from services.ledger import credit_balance, get_user
from services.lifecycle import (
    REVOKE_REASON_ADMIN,
    LifecycleEngine,
    list_active_accounts,
    serialize_account,
)
from services.notifier import Notifier
from services.runtime import get_lifecycle_engine, get_notifier
from services.stats import account_creation_stats
from services.sweeper import run_expiry_sweep_service

router = APIRouter()
logger = logging.getLogger(__name__)


class AdminCreditRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    amount: int = Field(ge=1)
    note: Optional[str] = Field(default=None, max_length=200)


@router.get("/accounts")
async def latest_active_accounts(
    limit: int = Query(default=50, ge=1, le=500),
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    accounts = await list_active_accounts(db, limit=limit)
    return {"accounts": [serialize_account(account) for account in accounts]}


@router.get("/accounts/search")
async def find_accounts_by_secret(
    secret: str = Query(min_length=1, max_length=128),
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Every account that ever held the secret, newest first."""
    result = await db.execute(
        select(Account).where(Account.secret == secret).order_by(Account.created_at.desc())
    )
    return {"accounts": [serialize_account(account) for account in result.scalars().all()]}


@router.delete("/accounts/{account_ref}")
async def delete_account(
    account_ref: str,
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_admin),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
    db: AsyncSession = Depends(get_db),
):
    account = await engine.revoke(
        db,
        account_ref=account_ref,
        reason=REVOKE_REASON_ADMIN,
        expected_user_id=user_id,
    )
    logger.info("Admin %s revoked account %s", auth.user_id, account.id)
    return serialize_account(account)


@router.post("/balance")
async def credit_user_balance(
    request: AdminCreditRequest,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    balance_after = await credit_balance(
        request.user_id,
        db,
        amount=request.amount,
        reason=request.note or f"Manual credit by {auth.user_id}",
        entry_type="admin_credit",
        reference_type="admin",
        reference_id=auth.user_id,
    )
    logger.info("Admin %s credited %s to user %s", auth.user_id, request.amount, request.user_id)
    return {"ok": True, "user_id": request.user_id, "credited": request.amount, "balance_after": balance_after}


@router.get("/users/{user_id}")
async def inspect_user(
    user_id: str,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await get_user(user_id, db)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "user_id": user.id,
        "first_name": user.first_name,
        "balance": int(user.balance or 0),
        "trial_used": bool(user.trial_used),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.get("/stats")
async def global_stats(
    auth: AuthContext = Depends(require_admin),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
    db: AsyncSession = Depends(get_db),
):
    return await account_creation_stats(db, now=engine.clock())


@router.post("/sweep")
async def trigger_sweep(
    auth: AuthContext = Depends(require_admin),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
    notifier: Notifier = Depends(get_notifier),
    db: AsyncSession = Depends(get_db),
):
    return await run_expiry_sweep_service(engine, db=db, notifier=notifier)
