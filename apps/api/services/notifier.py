"""Outbound user notifications (delivery belongs to the chat transport)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def topup_credited(self, *, user_id: str, order_id: str, amount: int, balance_after: int) -> None:
        raise NotImplementedError

    @abstractmethod
    async def account_expired(self, *, user_id: str, account_id: str, target_id: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Records notifications in the application log."""

    async def topup_credited(self, *, user_id: str, order_id: str, amount: int, balance_after: int) -> None:
        logger.info(
            "Top-up %s credited to user %s: +%s (balance %s)", order_id, user_id, amount, balance_after
        )

    async def account_expired(self, *, user_id: str, account_id: str, target_id: str) -> None:
        logger.info("Account %s of user %s on %s expired", account_id, user_id, target_id)
