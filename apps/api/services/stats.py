"""Account creation counters for the dashboard."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account


def period_starts(now: datetime) -> Dict[str, datetime]:
    """Start of today, of this week (Monday) and of this month, in UTC."""
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "today": day,
        "week": day - timedelta(days=day.weekday()),
        "month": day.replace(day=1),
    }


async def _count_created_since(db: AsyncSession, since: datetime, user_id: Optional[str]) -> int:
    query = select(func.count(Account.id)).where(Account.created_at >= since)
    if user_id:
        query = query.where(Account.user_id == user_id)
    result = await db.execute(query)
    return int(result.scalar() or 0)


async def account_creation_stats(
    db: AsyncSession,
    *,
    now: datetime,
    user_id: Optional[str] = None,
) -> Dict[str, Dict[str, int]]:
    starts = period_starts(now)
    stats: Dict[str, Dict[str, int]] = {"global": {}}
    if user_id:
        stats["user"] = {}
    for period, since in starts.items():
        stats["global"][period] = await _count_created_since(db, since, None)
        if user_id:
            stats["user"][period] = await _count_created_since(db, since, user_id)
    return stats
