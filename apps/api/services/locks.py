"""In-process keyed locks for serializing work on one ledger row."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    """Lazily created asyncio locks, dropped once nobody holds or awaits them."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[key] - 1
            if remaining <= 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._holders[key] = remaining

    def __len__(self) -> int:
        return len(self._locks)


row_locks = KeyedLocks()


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def invoice_key(order_id: str) -> str:
    return f"invoice:{order_id}"


def target_key(target_id: str) -> str:
    return f"target:{target_id}"
