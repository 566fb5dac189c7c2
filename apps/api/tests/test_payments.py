import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base
from models.balance_entry import BalanceEntry
from models.invoice import INVOICE_STATUS_PAID, INVOICE_STATUS_PENDING, Invoice
from services.errors import ExternalUnavailableError, InvoiceNotFoundError, ValidationError
from services.ledger import ensure_user, get_balance
from services.notifier import Notifier
from services.payment_gateway import ChargeResult, PaymentGatewayError
from services.payments import (
    RESULT_ACCEPTED,
    RESULT_IGNORED,
    RESULT_REJECTED,
    PaymentReconciler,
    get_invoice,
)


class StubGateway:
    def __init__(self, status="completed"):
        self.status = status
        self.fail = False
        self.charges = []
        self.verifications = []

    async def create_charge(self, order_id, amount):
        if self.fail:
            raise PaymentGatewayError("timeout")
        self.charges.append((order_id, amount))
        return ChargeResult(
            order_id=order_id,
            amount=amount,
            payment_reference="00020101021226QRIS",
            total_payment=amount + 310,
            expires_at="2026-05-10T12:30:00Z",
        )

    async def verify_transaction(self, order_id, amount):
        self.verifications.append((order_id, amount))
        if self.fail:
            raise PaymentGatewayError("timeout")
        return self.status


class RecordingNotifier(Notifier):
    def __init__(self, fail=False):
        self.fail = fail
        self.credited = []

    async def topup_credited(self, *, user_id, order_id, amount, balance_after) -> None:
        if self.fail:
            raise RuntimeError("chat transport down")
        self.credited.append((user_id, order_id, amount, balance_after))

    async def account_expired(self, **kwargs) -> None:
        return None


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with maker() as session:
        await ensure_user("u-1", session)
        session.add(Invoice(order_id="ORD-1", user_id="u-1", amount=20000, status=INVOICE_STATUS_PENDING))
        await session.commit()
    yield maker
    await engine.dispose()


async def _balance(session_maker, user_id="u-1"):
    async with session_maker() as session:
        return await get_balance(user_id, session)


@pytest.mark.asyncio
async def test_duplicate_delivery_credits_once(session_maker):
    gateway = StubGateway()
    notifier = RecordingNotifier()
    reconciler = PaymentReconciler(gateway=gateway, notifier=notifier)

    async with session_maker() as session:
        first = await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=20000, claimed_status="completed")
        invoice = await get_invoice("ORD-1", session)
        assert invoice.status == INVOICE_STATUS_PAID
        assert invoice.paid_at is not None
        second = await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=20000, claimed_status="completed")

    assert first.result == RESULT_ACCEPTED and first.credited
    assert second.result == RESULT_ACCEPTED and not second.credited
    assert await _balance(session_maker) == 20000
    assert notifier.credited == [("u-1", "ORD-1", 20000, 20000)]
    assert len(gateway.verifications) == 1


@pytest.mark.asyncio
async def test_concurrent_deliveries_credit_once(session_maker):
    reconciler = PaymentReconciler(gateway=StubGateway(), notifier=RecordingNotifier())

    async def deliver():
        async with session_maker() as session:
            return await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=20000)

    outcomes = await asyncio.gather(*[deliver() for _ in range(4)])
    assert all(outcome.result == RESULT_ACCEPTED for outcome in outcomes)
    assert sum(1 for outcome in outcomes if outcome.credited) == 1
    assert await _balance(session_maker) == 20000
    async with session_maker() as session:
        entries = (await session.execute(select(BalanceEntry))).scalars().all()
    assert [(entry.entry_type, entry.reference_id) for entry in entries] == [("topup", "ORD-1")]


@pytest.mark.asyncio
async def test_amount_mismatch_is_rejected_without_credit(session_maker):
    gateway = StubGateway()
    reconciler = PaymentReconciler(gateway=gateway, notifier=RecordingNotifier())
    async with session_maker() as session:
        outcome = await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=200000, claimed_status="completed")
        invoice = await get_invoice("ORD-1", session)

    assert outcome.result == RESULT_REJECTED
    assert outcome.as_dict()["ok"] is False
    assert invoice.status == INVOICE_STATUS_PENDING
    assert gateway.verifications == []
    assert await _balance(session_maker) == 0


@pytest.mark.asyncio
async def test_unknown_order_is_ignored(session_maker):
    gateway = StubGateway()
    reconciler = PaymentReconciler(gateway=gateway, notifier=RecordingNotifier())
    async with session_maker() as session:
        outcome = await reconciler.handle_gateway_event(session, order_id="ORD-404", amount=20000)
        assert await get_invoice("ORD-404", session) is None
    assert outcome.result == RESULT_IGNORED
    assert gateway.verifications == []


@pytest.mark.asyncio
async def test_claimed_completion_is_not_trusted(session_maker):
    reconciler = PaymentReconciler(gateway=StubGateway(status="pending"), notifier=RecordingNotifier())
    async with session_maker() as session:
        outcome = await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=20000, claimed_status="completed")
        invoice = await get_invoice("ORD-1", session)
    assert outcome.result == RESULT_IGNORED
    assert invoice.status == INVOICE_STATUS_PENDING
    assert await _balance(session_maker) == 0


@pytest.mark.asyncio
async def test_verification_outage_is_retryable(session_maker):
    gateway = StubGateway()
    gateway.fail = True
    reconciler = PaymentReconciler(gateway=gateway, notifier=RecordingNotifier())
    async with session_maker() as session:
        with pytest.raises(ExternalUnavailableError):
            await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=20000)

        gateway.fail = False
        outcome = await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=20000)
    assert outcome.credited
    assert await _balance(session_maker) == 20000


@pytest.mark.asyncio
async def test_notifier_failure_keeps_the_credit(session_maker):
    reconciler = PaymentReconciler(gateway=StubGateway(), notifier=RecordingNotifier(fail=True))
    async with session_maker() as session:
        outcome = await reconciler.handle_gateway_event(session, order_id="ORD-1", amount=20000)
        invoice = await get_invoice("ORD-1", session)
    assert outcome.credited
    assert invoice.status == INVOICE_STATUS_PAID
    assert await _balance(session_maker) == 20000


@pytest.mark.asyncio
async def test_create_topup_records_pending_invoice(session_maker):
    gateway = StubGateway()
    reconciler = PaymentReconciler(gateway=gateway, notifier=RecordingNotifier(), min_amount=10000)
    async with session_maker() as session:
        invoice = await reconciler.create_topup(session, user_id="u-2", amount=15000)

    assert invoice.order_id.startswith("TOPUP-u-2-")
    assert invoice.status == INVOICE_STATUS_PENDING
    assert invoice.amount == 15000
    assert invoice.total_payment == 15310
    assert invoice.payment_reference == "00020101021226QRIS"
    assert gateway.charges == [(invoice.order_id, 15000)]


@pytest.mark.asyncio
async def test_create_topup_validates_minimum_and_gateway_errors(session_maker):
    gateway = StubGateway()
    reconciler = PaymentReconciler(gateway=gateway, notifier=RecordingNotifier(), min_amount=10000)
    async with session_maker() as session:
        with pytest.raises(ValidationError):
            await reconciler.create_topup(session, user_id="u-1", amount=9999)

        gateway.fail = True
        with pytest.raises(ExternalUnavailableError):
            await reconciler.create_topup(session, user_id="u-1", amount=10000)
        invoices = (await session.execute(select(Invoice))).scalars().all()
    assert [invoice.order_id for invoice in invoices] == ["ORD-1"]


@pytest.mark.asyncio
async def test_check_invoice_is_scoped_to_owner(session_maker):
    reconciler = PaymentReconciler(gateway=StubGateway(), notifier=RecordingNotifier())
    async with session_maker() as session:
        with pytest.raises(InvoiceNotFoundError):
            await reconciler.check_invoice(session, order_id="ORD-1", user_id="intruder")
        outcome = await reconciler.check_invoice(session, order_id="ORD-1", user_id="u-1")
    assert outcome.credited
