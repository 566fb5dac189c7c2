"""
Top-up invoices and payment webhook reconciliation.

The inbound webhook is only a trigger: the credit decision is always taken
from the gateway's transaction-detail answer, and the pending -> paid
transition of the invoice is the idempotency boundary for the credit.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.invoice import INVOICE_STATUS_PAID, INVOICE_STATUS_PENDING, Invoice
from services.errors import ExternalUnavailableError, InvoiceNotFoundError, ValidationError
from services.ledger import apply_credit, ensure_user
from services.locks import invoice_key, row_locks, user_key
from services.notifier import Notifier
from services.payment_gateway import TRANSACTION_COMPLETED, PakasirGateway, PaymentGatewayError

logger = logging.getLogger(__name__)

RESULT_ACCEPTED = "accepted"
RESULT_IGNORED = "ignored"
RESULT_REJECTED = "rejected"


@dataclass(frozen=True)
class GatewayEventOutcome:
    result: str
    note: str
    order_id: str
    balance_after: Optional[int] = None

    @property
    def credited(self) -> bool:
        return self.balance_after is not None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.result != RESULT_REJECTED,
            "result": self.result,
            "note": self.note,
            "order_id": self.order_id,
            "credited": self.credited,
        }


def new_order_id(user_id: str) -> str:
    return f"TOPUP-{user_id}-{int(time.time() * 1000)}{secrets.token_hex(2)}"


def serialize_invoice(invoice: Invoice) -> Dict[str, Any]:
    return {
        "order_id": invoice.order_id,
        "user_id": invoice.user_id,
        "amount": invoice.amount,
        "total_payment": invoice.total_payment,
        "status": invoice.status,
        "payment_reference": invoice.payment_reference,
        "payment_expires_at": invoice.payment_expires_at,
        "created_at": invoice.created_at.isoformat() if invoice.created_at else None,
        "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
    }


async def get_invoice(order_id: str, db: AsyncSession) -> Optional[Invoice]:
    result = await db.execute(
        select(Invoice).where(Invoice.order_id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_user_invoices(user_id: str, db: AsyncSession, *, limit: int = 20) -> List[Invoice]:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.user_id == user_id)
        .order_by(Invoice.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


class PaymentReconciler:
    def __init__(self, *, gateway: PakasirGateway, notifier: Notifier, min_amount: int = 10000) -> None:
        self.gateway = gateway
        self.notifier = notifier
        self.min_amount = max(int(min_amount), 1)

    async def create_topup(self, db: AsyncSession, *, user_id: str, amount: Any) -> Invoice:
        """Request a QRIS charge and record the pending invoice."""
        try:
            value = int(amount)
        except (TypeError, ValueError) as exc:
            raise ValidationError("amount must be an integer") from exc
        if value < self.min_amount:
            raise ValidationError(f"minimum top-up is {self.min_amount}", minimum=self.min_amount)

        await ensure_user(user_id, db)
        order_id = new_order_id(user_id)
        try:
            charge = await self.gateway.create_charge(order_id, value)
        except PaymentGatewayError as exc:
            raise ExternalUnavailableError(f"payment gateway unavailable: {exc}") from exc

        invoice = Invoice(
            order_id=order_id,
            user_id=user_id,
            amount=value,
            total_payment=charge.total_payment,
            status=INVOICE_STATUS_PENDING,
            payment_reference=charge.payment_reference,
            payment_expires_at=charge.expires_at,
        )
        db.add(invoice)
        await db.commit()
        logger.info("Created top-up invoice %s for user %s (%s)", order_id, user_id, value)
        return await get_invoice(order_id, db)

    async def handle_gateway_event(
        self,
        db: AsyncSession,
        *,
        order_id: str,
        amount: Any,
        claimed_status: Optional[str] = None,
    ) -> GatewayEventOutcome:
        order_id = str(order_id or "").strip()
        invoice = await get_invoice(order_id, db)
        if invoice is None:
            return GatewayEventOutcome(RESULT_IGNORED, "unknown order", order_id)
        if invoice.status == INVOICE_STATUS_PAID:
            return GatewayEventOutcome(RESULT_ACCEPTED, "already paid", order_id)

        try:
            claimed_amount = int(amount)
        except (TypeError, ValueError):
            claimed_amount = None
        if claimed_amount != int(invoice.amount):
            logger.warning(
                "Rejected payment event for %s: amount %r does not match invoice amount %s",
                order_id,
                amount,
                invoice.amount,
            )
            return GatewayEventOutcome(RESULT_REJECTED, "amount mismatch", order_id)

        try:
            status = await self.gateway.verify_transaction(order_id, int(invoice.amount))
        except PaymentGatewayError as exc:
            raise ExternalUnavailableError(f"payment verification unavailable: {exc}") from exc
        if status != TRANSACTION_COMPLETED:
            logger.info(
                "Payment event for %s claims %r but gateway reports %r", order_id, claimed_status, status or "unknown"
            )
            return GatewayEventOutcome(RESULT_IGNORED, f"gateway status {status or 'unknown'}", order_id)

        balance_after = await self._settle(db, invoice)
        if balance_after is None:
            return GatewayEventOutcome(RESULT_ACCEPTED, "already paid", order_id)

        try:
            await self.notifier.topup_credited(
                user_id=invoice.user_id,
                order_id=order_id,
                amount=int(invoice.amount),
                balance_after=balance_after,
            )
        except Exception as exc:
            logger.warning("Top-up notification for %s failed: %s", order_id, exc)
        return GatewayEventOutcome(RESULT_ACCEPTED, "credited", order_id, balance_after=balance_after)

    async def _settle(self, db: AsyncSession, invoice: Invoice) -> Optional[int]:
        """Mark paid and credit as one transaction; None when another delivery won."""
        order_id = invoice.order_id
        user_id = invoice.user_id
        amount = int(invoice.amount)
        async with row_locks.hold(invoice_key(order_id)):
            async with row_locks.hold(user_key(user_id)):
                result = await db.execute(
                    update(Invoice)
                    .where(Invoice.order_id == order_id, Invoice.status == INVOICE_STATUS_PENDING)
                    .values(status=INVOICE_STATUS_PAID, paid_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    return None
                balance_after = await apply_credit(
                    user_id,
                    db,
                    amount=amount,
                    reason=f"Top-up {order_id}",
                    entry_type="topup",
                    reference_type="invoice",
                    reference_id=order_id,
                )
                await db.commit()
        logger.info("Invoice %s paid; credited %s to user %s", order_id, amount, user_id)
        return balance_after

    async def check_invoice(self, db: AsyncSession, *, order_id: str, user_id: str) -> GatewayEventOutcome:
        """User-initiated status poll, reconciled through the same path as the webhook."""
        invoice = await get_invoice(order_id, db)
        if invoice is None or invoice.user_id != user_id:
            raise InvoiceNotFoundError("invoice not found")
        return await self.handle_gateway_event(db, order_id=invoice.order_id, amount=invoice.amount)
