"""Expiry sweep: revoke every active account whose expiry has passed."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker
from services.lifecycle import LifecycleEngine, list_expired_active_account_ids
from services.notifier import Notifier

logger = logging.getLogger(__name__)


async def run_expiry_sweep_service(
    engine: LifecycleEngine,
    db: Optional[AsyncSession] = None,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    revoked = 0
    skipped = 0
    errors: List[str] = []

    async def _run_with_session(session: AsyncSession) -> None:
        nonlocal revoked, skipped
        account_ids = await list_expired_active_account_ids(session, now=engine.clock())
        for account_id in account_ids:
            try:
                account = await engine.revoke_if_expired(session, account_id)
            except Exception as exc:
                logger.exception("Expiry sweep failed for account %s", account_id)
                await session.rollback()
                skipped += 1
                errors.append(f"{account_id}:{exc}")
                continue
            if account is None:
                # Renewed or revoked by someone else since the scan.
                skipped += 1
                continue
            revoked += 1
            if notifier is not None:
                try:
                    await notifier.account_expired(
                        user_id=account.user_id,
                        account_id=account.id,
                        target_id=account.target_id,
                    )
                except Exception as exc:
                    logger.warning("Expiry notification for %s failed: %s", account_id, exc)

    if db is not None:
        await _run_with_session(db)
    else:
        async with async_session_maker() as session:
            await _run_with_session(session)

    if revoked or errors:
        logger.info("Expiry sweep revoked %s account(s), skipped %s", revoked, skipped)
    return {
        "revoked": revoked,
        "skipped": skipped,
        "errors": errors[:20],
    }
