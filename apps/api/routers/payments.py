"""Payment gateway webhook receiver."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.rate_limit import rate_limit
from services.payments import PaymentReconciler
from services.runtime import get_payment_reconciler

router = APIRouter()
logger = logging.getLogger(__name__)


class GatewayEvent(BaseModel):
    order_id: str
    amount: int
    status: Optional[str] = None
    project: Optional[str] = None
    payment_method: Optional[str] = None
    completed_at: Optional[str] = None


def _require_webhook_token(token: Optional[str]) -> None:
    expected = (settings.WEBHOOK_TOKEN or "").strip()
    if not expected or not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook token.")


async def _parse_event(request: Request) -> GatewayEvent:
    try:
        payload: Dict[str, Any] = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Webhook body must be JSON.") from exc
    try:
        event = GatewayEvent.model_validate(payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail="Webhook payload is missing order_id or amount.") from exc
    if not event.order_id.strip():
        raise HTTPException(status_code=400, detail="Webhook payload is missing order_id.")
    return event


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    token: Optional[str] = Query(default=None),
    _rate_limit: None = Depends(rate_limit("payments_webhook", limit=600, window_seconds=60)),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    db: AsyncSession = Depends(get_db),
):
    """Treat the callback as a trigger; the credit decision is re-verified upstream."""
    _require_webhook_token(token)
    event = await _parse_event(request)
    outcome = await reconciler.handle_gateway_event(
        db,
        order_id=event.order_id,
        amount=event.amount,
        claimed_status=event.status,
    )
    logger.info("Webhook %s -> %s (%s)", event.order_id, outcome.result, outcome.note)
    return outcome.as_dict()
