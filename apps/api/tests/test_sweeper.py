from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base
from models.account import (
    ACCOUNT_KIND_PAID,
    ACCOUNT_STATUS_ACTIVE,
    ACCOUNT_STATUS_EXPIRED,
    Account,
)
from services.catalog import Target, TargetCatalog
from services.credential_store import CredentialStoreUnavailableError, InMemoryCredentialStore
from services.lifecycle import LifecycleEngine
from services.notifier import Notifier
from services.sweeper import run_expiry_sweep_service


NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


class BrokenRemoveStore(InMemoryCredentialStore):
    async def remove(self, secret: str) -> None:
        raise CredentialStoreUnavailableError("del timed out")


class RecordingNotifier(Notifier):
    def __init__(self):
        self.expired = []

    async def topup_credited(self, **kwargs) -> None:
        return None

    async def account_expired(self, *, user_id: str, account_id: str, target_id: str) -> None:
        self.expired.append((user_id, account_id, target_id))


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sweeper.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


def _lifecycle(store) -> LifecycleEngine:
    return LifecycleEngine(
        credential_store=store,
        catalog=TargetCatalog([Target(code="sg1", host="sg1.example.net", prices={"1": 2000})]),
        clock=lambda: NOW,
    )


async def _seed(session_maker, store, rows):
    async with session_maker() as session:
        for account_id, secret, expires_at in rows:
            session.add(
                Account(
                    id=account_id,
                    user_id="u-1",
                    target_id="sg1",
                    secret=secret,
                    kind=ACCOUNT_KIND_PAID,
                    status=ACCOUNT_STATUS_ACTIVE,
                    created_at=NOW - timedelta(days=30),
                    expires_at=expires_at,
                )
            )
            store.secrets.add(secret)
        await session.commit()


async def _statuses(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(Account.id, Account.status))
        return dict(result.all())


@pytest.mark.asyncio
async def test_sweep_revokes_only_lapsed_accounts(session_maker):
    store = InMemoryCredentialStore()
    notifier = RecordingNotifier()
    await _seed(
        session_maker,
        store,
        [
            ("acc-past", "past123", NOW - timedelta(seconds=1)),
            ("acc-edge", "edge123", NOW),
            ("acc-future", "future123", NOW + timedelta(minutes=1)),
        ],
    )

    async with session_maker() as session:
        result = await run_expiry_sweep_service(_lifecycle(store), db=session, notifier=notifier)

    assert result["revoked"] == 2
    assert result["errors"] == []
    assert await _statuses(session_maker) == {
        "acc-past": ACCOUNT_STATUS_EXPIRED,
        "acc-edge": ACCOUNT_STATUS_EXPIRED,
        "acc-future": ACCOUNT_STATUS_ACTIVE,
    }
    assert store.secrets == {"future123"}
    assert sorted(item[1] for item in notifier.expired) == ["acc-edge", "acc-past"]


@pytest.mark.asyncio
async def test_sweep_marks_expired_even_when_remote_delete_fails(session_maker):
    store = BrokenRemoveStore()
    await _seed(session_maker, store, [("acc-1", "abc123", NOW - timedelta(seconds=1))])

    async with session_maker() as session:
        result = await run_expiry_sweep_service(_lifecycle(store), db=session)

    assert result["revoked"] == 1
    assert await _statuses(session_maker) == {"acc-1": ACCOUNT_STATUS_EXPIRED}
    async with session_maker() as session:
        account = (await session.execute(select(Account))).scalar_one()
    assert account.revoke_reason == "expired"
    assert account.revoked_at is not None


@pytest.mark.asyncio
async def test_repeated_sweep_is_a_no_op(session_maker):
    store = InMemoryCredentialStore()
    await _seed(session_maker, store, [("acc-1", "abc123", NOW - timedelta(hours=1))])
    lifecycle = _lifecycle(store)

    async with session_maker() as session:
        first = await run_expiry_sweep_service(lifecycle, db=session)
    async with session_maker() as session:
        second = await run_expiry_sweep_service(lifecycle, db=session)

    assert first["revoked"] == 1
    assert second == {"revoked": 0, "skipped": 0, "errors": []}


@pytest.mark.asyncio
async def test_account_renewed_after_scan_is_skipped(session_maker):
    store = InMemoryCredentialStore()
    await _seed(session_maker, store, [("acc-1", "abc123", NOW - timedelta(hours=1))])
    lifecycle = _lifecycle(store)

    async with session_maker() as session:
        account = (await session.execute(select(Account))).scalar_one()
        account.expires_at = NOW + timedelta(days=1)
        await session.commit()

    async with session_maker() as session:
        revoked = await lifecycle.revoke_if_expired(session, "acc-1")

    assert revoked is None
    assert await _statuses(session_maker) == {"acc-1": ACCOUNT_STATUS_ACTIVE}
    assert store.secrets == {"abc123"}


class SelectiveRemoveStore(InMemoryCredentialStore):
    def __init__(self, failing):
        super().__init__()
        self.failing = set(failing)

    async def remove(self, secret: str) -> None:
        if secret in self.failing:
            raise CredentialStoreUnavailableError("del timed out")
        await super().remove(secret)


class FlakyLifecycle(LifecycleEngine):
    broken_ids = {"acc-broken"}

    async def revoke_if_expired(self, db, account_id):
        if account_id in self.broken_ids:
            raise RuntimeError("row vanished mid-sweep")
        return await super().revoke_if_expired(db, account_id)


@pytest.mark.asyncio
async def test_one_failing_account_does_not_block_the_rest(session_maker):
    store = SelectiveRemoveStore(failing={"stuck123"})
    await _seed(
        session_maker,
        store,
        [
            ("acc-broken", "broken123", NOW - timedelta(hours=3)),
            ("acc-stuck", "stuck123", NOW - timedelta(hours=2)),
            ("acc-ok", "fine123", NOW - timedelta(hours=1)),
        ],
    )
    lifecycle = FlakyLifecycle(
        credential_store=store,
        catalog=TargetCatalog([Target(code="sg1", host="sg1.example.net", prices={"1": 2000})]),
        clock=lambda: NOW,
    )

    async with session_maker() as session:
        result = await run_expiry_sweep_service(lifecycle, db=session)

    assert result["revoked"] == 2
    assert result["skipped"] == 1
    assert result["errors"] == ["acc-broken:row vanished mid-sweep"]
    assert await _statuses(session_maker) == {
        "acc-broken": ACCOUNT_STATUS_ACTIVE,
        "acc-stuck": ACCOUNT_STATUS_EXPIRED,
        "acc-ok": ACCOUNT_STATUS_EXPIRED,
    }
    assert store.secrets == {"broken123", "stuck123"}
