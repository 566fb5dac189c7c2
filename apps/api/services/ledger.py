"""Balance ledger: atomic per-user debit/credit with an audit trail."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.balance_entry import BalanceEntry
from models.user import User
from services.errors import ValidationError
from services.locks import row_locks, user_key

logger = logging.getLogger(__name__)


def _require_positive_amount(amount: Any) -> int:
    try:
        value = int(amount)
    except (TypeError, ValueError) as exc:
        raise ValidationError("amount must be an integer") from exc
    if value <= 0:
        raise ValidationError("amount must be greater than 0")
    return value


async def get_user(user_id: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.balance).where(User.id == user_id))
    return int(result.scalar() or 0)


async def ensure_user(user_id: str, db: AsyncSession, *, first_name: Optional[str] = None) -> User:
    """Create the user row on first interaction, refreshing the display name."""
    async with row_locks.hold(user_key(user_id)):
        user = await get_user(user_id, db)
        if user is None:
            db.add(User(id=user_id, first_name=first_name or "", balance=0, trial_used=False))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
        elif first_name and user.first_name != first_name:
            user.first_name = first_name
            await db.commit()
        return await get_user(user_id, db)


async def _record_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_type: str,
    delta: int,
    reason: Optional[str],
    reference_type: Optional[str],
    reference_id: Optional[str],
) -> int:
    balance_after = await get_balance(user_id, db)
    db.add(
        BalanceEntry(
            user_id=user_id,
            entry_type=entry_type,
            delta=delta,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
    )
    await db.flush()
    return balance_after


async def apply_debit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    entry_type: str = "debit",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> Optional[int]:
    """Conditionally debit inside the caller's transaction.

    Returns the balance after the debit, or None when funds are insufficient
    (nothing is written). The caller holds the user lock and commits.
    """
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.balance >= amount)
        .values(balance=User.balance - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return await _record_entry(
        user_id,
        db,
        entry_type=entry_type,
        delta=-amount,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )


async def apply_credit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    entry_type: str = "credit",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    """Credit inside the caller's transaction, creating the user row if absent."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(balance=User.balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.add(User(id=user_id, first_name="", balance=amount, trial_used=False))
        await db.flush()
    return await _record_entry(
        user_id,
        db,
        entry_type=entry_type,
        delta=amount,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )


async def debit_balance(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    entry_type: str = "debit",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> bool:
    """Debit as one committed transaction; False (no mutation) on insufficient funds."""
    debit_amount = _require_positive_amount(amount)
    async with row_locks.hold(user_key(user_id)):
        balance_after = await apply_debit(
            user_id,
            db,
            amount=debit_amount,
            reason=reason,
            entry_type=entry_type,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        if balance_after is None:
            await db.rollback()
            return False
        await db.commit()
        return True


async def credit_balance(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    entry_type: str = "credit",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    """Credit as one committed transaction and return the new balance."""
    credit_amount = _require_positive_amount(amount)
    async with row_locks.hold(user_key(user_id)):
        balance_after = await apply_credit(
            user_id,
            db,
            amount=credit_amount,
            reason=reason,
            entry_type=entry_type,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        await db.commit()
        return balance_after


async def claim_trial(user_id: str, db: AsyncSession) -> bool:
    """Flip trial_used false -> true; False when the trial was already taken."""
    async with row_locks.hold(user_key(user_id)):
        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.trial_used.is_(False))
            .values(trial_used=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            return False
        await db.commit()
        return True


async def release_trial(user_id: str, db: AsyncSession) -> None:
    """Compensate a trial claim whose provisioning did not complete."""
    async with row_locks.hold(user_key(user_id)):
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(trial_used=False)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    logger.warning("Released trial claim for user %s after failed provisioning", user_id)


async def get_balance_summary(user_id: str, db: AsyncSession, *, limit: int = 30) -> Dict[str, Any]:
    user = await get_user(user_id, db)
    result = await db.execute(
        select(BalanceEntry)
        .where(BalanceEntry.user_id == user_id)
        .order_by(BalanceEntry.created_at.desc())
        .limit(max(int(limit), 1))
    )
    entries = result.scalars().all()
    return {
        "user_id": user_id,
        "balance": int(user.balance or 0) if user else 0,
        "trial_used": bool(user.trial_used) if user else False,
        "created_at": user.created_at.isoformat() if user and user.created_at else None,
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta": entry.delta,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "reference_type": entry.reference_type,
                "reference_id": entry.reference_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
