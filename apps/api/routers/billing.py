"""Balance and top-up router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import is_paid_mode
from database import get_db
from routers.auth_scope import AuthContext, require_member
from routers.rate_limit import rate_limit
from services.ledger import ensure_user, get_balance_summary
from services.payments import PaymentReconciler, list_user_invoices, serialize_invoice
from services.runtime import get_payment_reconciler

router = APIRouter()
logger = logging.getLogger(__name__)


class TopUpRequest(BaseModel):
    amount: int


def _require_paid_mode() -> None:
    if not is_paid_mode():
        raise HTTPException(status_code=404, detail="Top-up is disabled in free mode.")


@router.get("/balance")
async def balance_summary(
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(require_member),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(auth.user_id, db)
    return await get_balance_summary(auth.user_id, db, limit=limit)


@router.post("/topup", status_code=201)
async def create_topup(
    request: TopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(require_member),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    db: AsyncSession = Depends(get_db),
):
    _require_paid_mode()
    invoice = await reconciler.create_topup(db, user_id=auth.user_id, amount=request.amount)
    return serialize_invoice(invoice)


@router.get("/invoices")
async def my_invoices(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(require_member),
    db: AsyncSession = Depends(get_db),
):
    invoices = await list_user_invoices(auth.user_id, db, limit=limit)
    return {"invoices": [serialize_invoice(invoice) for invoice in invoices]}


@router.post("/topup/{order_id}/check")
async def check_topup(
    order_id: str,
    _rate_limit: None = Depends(rate_limit("billing_check", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(require_member),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    db: AsyncSession = Depends(get_db),
):
    """Poll the gateway for a pending invoice instead of waiting for the webhook."""
    _require_paid_mode()
    outcome = await reconciler.check_invoice(db, order_id=order_id, user_id=auth.user_id)
    return outcome.as_dict()
