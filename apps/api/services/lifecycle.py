"""
Account lifecycle engine.

Provisioning is a saga over two stores with no shared transaction:
reserve (balance debit or trial claim) -> add secret to the credential
store -> persist the account row, compensating the reservation when a
later step fails. No ledger lock is held while the credential store runs.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import (
    ACCOUNT_KIND_PAID,
    ACCOUNT_KIND_TRIAL,
    ACCOUNT_STATUS_ACTIVE,
    ACCOUNT_STATUS_EXPIRED,
    ACCOUNT_STATUS_REVOKED,
    Account,
)
from services.catalog import Target, TargetCatalog
from services.credential_store import CredentialAlreadyExistsError, CredentialStore, CredentialStoreError
from services.errors import (
    AccountNotActiveError,
    AccountNotFoundError,
    AlreadyExistsError,
    CapacityExceededError,
    DataConsistencyViolationError,
    ExternalUnavailableError,
    InsufficientBalanceError,
    NotAccountOwnerError,
    ProvisioningError,
    TargetUnavailableError,
    TrialAlreadyUsedError,
    TrialNotRenewableError,
    ValidationError,
)
from services.ledger import (
    apply_debit,
    claim_trial,
    credit_balance,
    debit_balance,
    ensure_user,
    release_trial,
)
from services.locks import account_key, row_locks, target_key, user_key

logger = logging.getLogger(__name__)

SECRET_MIN_LENGTH = 3
SECRET_MAX_LENGTH = 32
REVOKE_REASON_EXPIRED = "expired"
REVOKE_REASON_ADMIN = "admin"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _failure_cause(exc: BaseException) -> str:
    if isinstance(exc, asyncio.CancelledError):
        return "cancelled"
    if isinstance(exc, ProvisioningError):
        return exc.code
    return type(exc).__name__


def validate_secret(secret: Any) -> str:
    """3-32 characters, no whitespace, no comma."""
    text = str(secret or "")
    if len(text) < SECRET_MIN_LENGTH or len(text) > SECRET_MAX_LENGTH:
        raise ValidationError(
            f"secret must be {SECRET_MIN_LENGTH}-{SECRET_MAX_LENGTH} characters long"
        )
    if "," in text or any(ch.isspace() for ch in text):
        raise ValidationError("secret must not contain whitespace or commas")
    return text


def serialize_account(account: Account) -> Dict[str, Any]:
    created_at = _as_utc(account.created_at)
    expires_at = _as_utc(account.expires_at)
    revoked_at = _as_utc(account.revoked_at)
    return {
        "id": account.id,
        "user_id": account.user_id,
        "target_id": account.target_id,
        "host": account.host,
        "secret": account.secret,
        "kind": account.kind,
        "status": account.status,
        "created_at": created_at.isoformat() if created_at else None,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "revoked_at": revoked_at.isoformat() if revoked_at else None,
        "revoke_reason": account.revoke_reason,
    }


async def _load_account(account_id: str, db: AsyncSession) -> Optional[Account]:
    result = await db.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_account(account_ref: str, db: AsyncSession) -> Optional[Account]:
    """Resolve an account by id, else by secret (active row first, then newest)."""
    ref = str(account_ref or "").strip()
    if not ref:
        return None
    account = await _load_account(ref, db)
    if account is not None:
        return account
    result = await db.execute(
        select(Account)
        .where(Account.secret == ref)
        .order_by((Account.status == ACCOUNT_STATUS_ACTIVE).desc(), Account.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_active_account_by_secret(secret: str, db: AsyncSession) -> Optional[Account]:
    result = await db.execute(
        select(Account).where(Account.secret == secret, Account.status == ACCOUNT_STATUS_ACTIVE)
    )
    return result.scalars().first()


async def count_active_accounts(target_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(Account.id)).where(
            Account.target_id == target_id,
            Account.status == ACCOUNT_STATUS_ACTIVE,
        )
    )
    return int(result.scalar() or 0)


async def list_user_accounts(user_id: str, db: AsyncSession) -> List[Account]:
    result = await db.execute(
        select(Account)
        .where(Account.user_id == user_id, Account.status == ACCOUNT_STATUS_ACTIVE)
        .order_by(Account.created_at.asc())
    )
    return list(result.scalars().all())


async def list_active_accounts(db: AsyncSession, *, limit: int = 50) -> List[Account]:
    result = await db.execute(
        select(Account)
        .where(Account.status == ACCOUNT_STATUS_ACTIVE)
        .order_by(Account.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def list_expired_active_account_ids(db: AsyncSession, *, now: datetime) -> List[str]:
    result = await db.execute(
        select(Account.id).where(
            Account.status == ACCOUNT_STATUS_ACTIVE,
            Account.expires_at <= now,
        )
    )
    return [str(row) for row in result.scalars().all()]


async def target_usage(catalog: TargetCatalog, db: AsyncSession) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for target in catalog.list():
        used = await count_active_accounts(target.code, db)
        rows.append(
            {
                "code": target.code,
                "name": target.name or target.code,
                "host": target.host,
                "capacity": target.capacity,
                "used": used,
                "available": target.has_capacity_for(used),
                "prices": dict(target.prices),
                "quota_gb": target.quota_gb,
                "ip_limit": target.ip_limit,
            }
        )
    return rows


class LifecycleEngine:
    """Drives accounts through requested -> active -> expired/revoked."""

    def __init__(
        self,
        *,
        credential_store: CredentialStore,
        catalog: TargetCatalog,
        paid_mode: bool = True,
        package_days: Iterable[int] = (1, 14, 30),
        trial_hours: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.credential_store = credential_store
        self.catalog = catalog
        self.paid_mode = paid_mode
        self.package_days = tuple(int(days) for days in package_days)
        self.trial_hours = max(int(trial_hours), 1)
        self.clock = clock

    def _validate_days(self, days: Any) -> int:
        try:
            value = int(days)
        except (TypeError, ValueError) as exc:
            raise ValidationError("duration must be a whole number of days") from exc
        if value <= 0 or (self.package_days and value not in self.package_days):
            allowed = ", ".join(str(item) for item in self.package_days)
            raise ValidationError(f"duration must be one of: {allowed} days")
        return value

    def _resolve_target(self, target_id: str) -> Target:
        target = self.catalog.get(target_id)
        if target is None:
            raise TargetUnavailableError(f"target {target_id!r} does not exist or is disabled")
        return target

    def _resolve_price(self, target: Target, days: int) -> int:
        if not self.paid_mode:
            return 0
        price = target.price_for(days)
        if price <= 0:
            raise ValidationError(f"no price configured for {days} days on {target.code}")
        return price

    async def provision(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        target_id: str,
        secret: Any,
        duration_days: Optional[int] = None,
        kind: str = ACCOUNT_KIND_PAID,
    ) -> Account:
        if kind not in (ACCOUNT_KIND_PAID, ACCOUNT_KIND_TRIAL):
            raise ValidationError("kind must be paid or trial")

        target = self._resolve_target(target_id)
        used = await count_active_accounts(target.code, db)
        if not target.has_capacity_for(used):
            raise CapacityExceededError(f"target {target.code} is full", used=used, capacity=target.capacity)

        secret = validate_secret(secret)
        if await find_active_account_by_secret(secret, db) is not None:
            raise AlreadyExistsError("secret is already in use; choose another")
        try:
            remote_exists = await self.credential_store.exists(secret)
        except CredentialStoreError as exc:
            raise ExternalUnavailableError(f"credential store unavailable: {exc}") from exc
        if remote_exists:
            raise AlreadyExistsError("secret is already in use; choose another")

        user = await ensure_user(user_id, db)
        if kind == ACCOUNT_KIND_TRIAL:
            if user.trial_used:
                raise TrialAlreadyUsedError("the trial can only be used once per user")
            price = 0
            duration = timedelta(hours=self.trial_hours)
        else:
            days = self._validate_days(duration_days)
            price = self._resolve_price(target, days)
            duration = timedelta(days=days)
            if price > 0 and int(user.balance or 0) < price:
                raise InsufficientBalanceError(
                    "balance is too low for this package", price=price, balance=int(user.balance or 0)
                )

        # 1. reserve
        if kind == ACCOUNT_KIND_TRIAL:
            if not await claim_trial(user_id, db):
                raise TrialAlreadyUsedError("the trial can only be used once per user")
        elif price > 0:
            debited = await debit_balance(
                user_id,
                db,
                amount=price,
                reason=f"Provision {target.code} ({duration.days}d)",
                reference_type="target",
                reference_id=target.code,
            )
            if not debited:
                raise InsufficientBalanceError("balance is too low for this package", price=price)

        # 2. add to the credential store, 3. persist; anything raised after the
        # reserve (cancellation included) is compensated before it propagates.
        added = False
        try:
            try:
                await self.credential_store.add(secret)
            except CredentialAlreadyExistsError as exc:
                raise AlreadyExistsError("secret is already in use; choose another") from exc
            except CredentialStoreError as exc:
                raise ExternalUnavailableError(f"credential store unavailable: {exc}") from exc
            added = True
            account = await self._insert_account(
                db, user_id=user_id, target=target, secret=secret, kind=kind, duration=duration
            )
        except BaseException as exc:
            # After a uniqueness race the winning row owns the secret in the store.
            remove_secret = added and not isinstance(exc, DataConsistencyViolationError)
            await asyncio.shield(
                self._undo_provision(
                    db,
                    user_id=user_id,
                    kind=kind,
                    price=price,
                    target=target,
                    secret=secret if remove_secret else None,
                    cause=_failure_cause(exc),
                )
            )
            raise

        logger.info("Provisioned %s account %s on %s for user %s", kind, account.id, target.code, user_id)
        return account

    async def _insert_account(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        target: Target,
        secret: str,
        kind: str,
        duration: timedelta,
    ) -> Account:
        async with row_locks.hold(target_key(target.code)):
            now = self.clock()
            account = Account(
                user_id=user_id,
                target_id=target.code,
                host=target.host,
                secret=secret,
                kind=kind,
                status=ACCOUNT_STATUS_ACTIVE,
                created_at=now,
                expires_at=now + duration,
            )
            db.add(account)
            try:
                await db.flush()
            except IntegrityError as exc:
                await db.rollback()
                raise DataConsistencyViolationError(
                    "secret was claimed concurrently; choose another secret"
                ) from exc

            if target.capacity > 0:
                used = await count_active_accounts(target.code, db)
                if used > target.capacity:
                    await db.rollback()
                    raise CapacityExceededError(
                        f"target {target.code} is full", used=used - 1, capacity=target.capacity
                    )
            await db.commit()
            return account

    async def _undo_provision(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        kind: str,
        price: int,
        target: Target,
        secret: Optional[str],
        cause: str,
    ) -> None:
        try:
            await db.rollback()
            if secret is not None:
                await self._remove_remote(secret)
            await self._compensate(db, user_id=user_id, kind=kind, price=price, target=target, cause=cause)
        except Exception:
            logger.exception(
                "Compensation for user %s on %s failed (%s); needs reconciliation", user_id, target.code, cause
            )
            raise

    async def _compensate(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        kind: str,
        price: int,
        target: Target,
        cause: str,
    ) -> None:
        if kind == ACCOUNT_KIND_TRIAL:
            await release_trial(user_id, db)
            return
        if price <= 0:
            return
        await credit_balance(
            user_id,
            db,
            amount=price,
            reason=f"Refund: provisioning on {target.code} failed ({cause})",
            entry_type="refund",
            reference_type="target",
            reference_id=target.code,
        )
        logger.warning("Refunded %s to user %s after failed provisioning on %s: %s", price, user_id, target.code, cause)

    async def _remove_remote(self, secret: str) -> bool:
        try:
            await self.credential_store.remove(secret)
            return True
        except Exception as exc:
            logger.warning("Credential store removal failed; needs reconciliation: %s", exc)
            return False

    async def renew(
        self,
        db: AsyncSession,
        *,
        account_ref: str,
        caller_user_id: str,
        extra_days: Any,
        is_admin: bool = False,
    ) -> datetime:
        """Extend from max(current expiry, now); the caller pays."""
        days = self._validate_days(extra_days)
        account = await get_account(account_ref, db)
        if account is None:
            raise AccountNotFoundError("account not found")

        async with row_locks.hold(account_key(account.id)):
            account = await _load_account(account.id, db)
            if account is None:
                raise AccountNotFoundError("account not found")
            if account.status != ACCOUNT_STATUS_ACTIVE:
                raise AccountNotActiveError(f"account is {account.status}")
            if not is_admin and account.user_id != caller_user_id:
                raise NotAccountOwnerError("account belongs to another user")
            if account.kind == ACCOUNT_KIND_TRIAL:
                raise TrialNotRenewableError("trial accounts cannot be renewed")

            target = self._resolve_target(account.target_id)
            price = self._resolve_price(target, days)
            now = self.clock()
            new_expiry = max(_as_utc(account.expires_at), now) + timedelta(days=days)

            async with row_locks.hold(user_key(caller_user_id)):
                if price > 0:
                    balance_after = await apply_debit(
                        caller_user_id,
                        db,
                        amount=price,
                        reason=f"Renew {target.code} ({days}d)",
                        reference_type="account",
                        reference_id=account.id,
                    )
                    if balance_after is None:
                        await db.rollback()
                        raise InsufficientBalanceError("balance is too low for this renewal", price=price)

                result = await db.execute(
                    update(Account)
                    .where(Account.id == account.id, Account.status == ACCOUNT_STATUS_ACTIVE)
                    .values(expires_at=new_expiry)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    raise AccountNotActiveError("account is no longer active")
                await db.commit()

        logger.info("Renewed account %s by %s days (until %s)", account.id, days, new_expiry.isoformat())
        return new_expiry

    async def revoke(
        self,
        db: AsyncSession,
        *,
        account_ref: str,
        reason: str = REVOKE_REASON_ADMIN,
        expected_user_id: Optional[str] = None,
    ) -> Account:
        account = await get_account(account_ref, db)
        if account is None or (expected_user_id and account.user_id != str(expected_user_id)):
            raise AccountNotFoundError("account not found")
        revoked = await self._revoke(db, account.id, reason=reason, only_if_expired=False)
        if revoked is None:
            raise AccountNotActiveError("account is not active")
        return revoked

    async def revoke_if_expired(self, db: AsyncSession, account_id: str) -> Optional[Account]:
        """Sweeper entry point; None when the account no longer qualifies."""
        return await self._revoke(db, account_id, reason=REVOKE_REASON_EXPIRED, only_if_expired=True)

    async def _revoke(
        self,
        db: AsyncSession,
        account_id: str,
        *,
        reason: str,
        only_if_expired: bool,
    ) -> Optional[Account]:
        async with row_locks.hold(account_key(account_id)):
            account = await _load_account(account_id, db)
            if account is None or account.status != ACCOUNT_STATUS_ACTIVE:
                return None
            now = self.clock()
            if only_if_expired and _as_utc(account.expires_at) > now:
                return None

            # The ledger decides whether the credential should exist. The
            # account lock stays held so a concurrent renew sees the outcome.
            await self._remove_remote(account.secret)

            conditions = [Account.id == account_id, Account.status == ACCOUNT_STATUS_ACTIVE]
            if only_if_expired:
                conditions.append(Account.expires_at <= now)
            status = ACCOUNT_STATUS_EXPIRED if reason == REVOKE_REASON_EXPIRED else ACCOUNT_STATUS_REVOKED
            result = await db.execute(
                update(Account)
                .where(*conditions)
                .values(status=status, revoked_at=now, revoke_reason=reason)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return None
            await db.commit()
            logger.info("Account %s marked %s (%s)", account_id, status, reason)
            return await _load_account(account_id, db)
