"""Integration tests for the stale settlement sweep and invoice backfill worker."""
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from uuid import UUID

import pytest
import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.adapters.base import SettlementResult
from credit_engine.adapters.registry import ChannelRegistry
from credit_engine.adapters.stripe_adapter import StripeCardAdapter
from credit_engine.exceptions import ChannelTimeout
from credit_engine.models.base import utcnow
from credit_engine.models.purchase import PaymentChannel, PaymentStatus, Purchase, PurchaseType
from credit_engine.services.invoice_service import InvoiceService
from credit_engine.services.ledger_service import LedgerService
from credit_engine.services.purchase_service import PurchaseService
from credit_engine.workers import settlement


async def _stuck_purchase(
    service: PurchaseService, user_id: UUID, channel: PaymentChannel, amount: int = 1000, age: timedelta = timedelta(hours=1)
) -> Purchase:
    purchase = await service.create(user_id, PurchaseType.CREDITS, amount=amount)
    await service.begin_settlement(purchase.id, channel)
    purchase.processing_started_at = utcnow() - age
    await service.db.flush()
    return purchase


@pytest.mark.asyncio
async def test_reconcile_settles_fails_and_leaves_pending(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that each stale purchase moves to whatever the provider now reports."""
    service = PurchaseService(db_session, channels=channels)
    paid = await _stuck_purchase(service, account_id, PaymentChannel.STRIPE_CHECKOUT)
    declined = await _stuck_purchase(service, account_id, PaymentChannel.PAYPAL)
    undecided = await _stuck_purchase(service, account_id, PaymentChannel.STRIPE_CARD)
    fresh = await _stuck_purchase(service, account_id, PaymentChannel.STRIPE_CHECKOUT, age=timedelta(minutes=1))
    channels.get(PaymentChannel.PAYPAL).next_result = SettlementResult.failed("Buyer abandoned approval")
    channels.get(PaymentChannel.STRIPE_CARD).next_result = SettlementResult.still_pending("pi_test")

    summary = await service.reconcile_stale(timedelta(minutes=30))

    assert summary == {"completed": 1, "failed": 1, "pending": 1, "errors": 0}
    assert paid.payment_status == PaymentStatus.COMPLETED
    assert declined.payment_status == PaymentStatus.FAILED
    assert declined.failure_reason == "Buyer abandoned approval"
    assert undecided.payment_status == PaymentStatus.PROCESSING
    assert fresh.payment_status == PaymentStatus.PROCESSING
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("50")
    assert await InvoiceService(db_session).get_invoice_for_purchase(paid.id) is not None


@pytest.mark.asyncio
async def test_reconcile_continues_past_errors(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that a provider timeout on one purchase does not stop the sweep."""
    service = PurchaseService(db_session, channels=channels)
    unreachable = await _stuck_purchase(service, account_id, PaymentChannel.PAYPAL, age=timedelta(hours=2))
    paid = await _stuck_purchase(service, account_id, PaymentChannel.STRIPE_CHECKOUT)

    async def timeout(purchase):
        raise ChannelTimeout("PayPal did not answer")

    channels.get(PaymentChannel.PAYPAL).query_status = timeout

    summary = await service.reconcile_stale(timedelta(minutes=30))

    assert summary == {"completed": 1, "failed": 0, "pending": 0, "errors": 1}
    assert unreachable.payment_status == PaymentStatus.PROCESSING
    assert paid.payment_status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_reconcile_worker_commits_outcomes(
    db_session: AsyncSession, session_factory, account_id: UUID, channels, monkeypatch
) -> None:
    """Test the scheduled reconciliation job end to end."""
    service = PurchaseService(db_session, channels=channels)
    purchase = await _stuck_purchase(service, account_id, PaymentChannel.STRIPE_CHECKOUT)
    await db_session.commit()
    monkeypatch.setattr(settlement, "AsyncSessionLocal", session_factory)

    summary = await settlement.reconcile_stale_purchases({"channels": channels})

    assert summary["completed"] == 1
    await db_session.refresh(purchase)
    assert purchase.payment_status == PaymentStatus.COMPLETED
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("50")


@pytest.mark.asyncio
async def test_backfill_worker_generates_missing_invoices(
    db_session: AsyncSession, session_factory, account_id: UUID, channels, monkeypatch
) -> None:
    """Test the scheduled invoice backfill job."""

    async def broken_generate(self, source, billing_address=None, tax_rate=None):
        raise RuntimeError("Invoice store unavailable")

    service = PurchaseService(db_session, channels=channels)
    purchase = await service.create(account_id, PurchaseType.CREDITS, amount=1000)
    await service.begin_settlement(purchase.id, PaymentChannel.STRIPE_CHECKOUT)
    with monkeypatch.context() as patch:
        patch.setattr(InvoiceService, "generate", broken_generate)
        await service.on_settled(purchase.id, {"session_id": "cs_test"})
    await db_session.commit()
    monkeypatch.setattr(settlement, "AsyncSessionLocal", session_factory)

    assert await settlement.backfill_invoices({}) == {"generated": 1}
    assert await settlement.backfill_invoices({}) == {"generated": 0}

    invoice = await InvoiceService(db_session).get_invoice_for_purchase(purchase.id)
    assert invoice.total_amount == 1000


async def _timed_out_purchase(service: PurchaseService, user_id: UUID, channel: PaymentChannel) -> Purchase:
    purchase = await service.create(user_id, PurchaseType.CREDITS, amount=1000)
    with pytest.raises(ChannelTimeout):
        await service.begin_settlement(purchase.id, channel)
    purchase.processing_started_at = utcnow() - timedelta(hours=1)
    await service.db.flush()
    return purchase


@pytest.mark.asyncio
async def test_reconcile_keeps_unreferenced_purchase_pending(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that a purchase whose start timed out is not failed without a provider answer."""
    service = PurchaseService(db_session, channels=channels)
    channels.get(PaymentChannel.PAYPAL).initiate_error = ChannelTimeout("No answer")
    purchase = await _timed_out_purchase(service, account_id, PaymentChannel.PAYPAL)

    summary = await service.reconcile_stale(timedelta(minutes=30))

    assert summary == {"completed": 0, "failed": 0, "pending": 1, "errors": 0}
    assert purchase.payment_status == PaymentStatus.PROCESSING
    assert purchase.payment_provider_id is None
    assert channels.get(PaymentChannel.PAYPAL).confirm_calls == []


@pytest.mark.asyncio
async def test_reconcile_recovers_card_payment_after_start_timeout(
    db_session: AsyncSession, account_id: UUID, notifier, monkeypatch
) -> None:
    """Test that a card payment made after a timed-out start is found and credited."""

    def unreachable(**kwargs):
        raise stripe.APIConnectionError("Network error")

    monkeypatch.setattr(stripe.PaymentIntent, "create", unreachable)
    service = PurchaseService(db_session, channels=ChannelRegistry([StripeCardAdapter()]), notifier=notifier)
    purchase = await _timed_out_purchase(service, account_id, PaymentChannel.STRIPE_CARD)
    assert purchase.payment_provider_id is None

    paid = SimpleNamespace(
        id="pi_recovered",
        status="succeeded",
        amount_received=1000,
        currency="usd",
        last_payment_error=None,
        metadata={"purchase_id": str(purchase.id)},
    )
    monkeypatch.setattr(stripe.PaymentIntent, "search", lambda **kwargs: SimpleNamespace(data=[paid]))

    summary = await service.reconcile_stale(timedelta(minutes=30))

    assert summary["completed"] == 1
    assert purchase.payment_status == PaymentStatus.COMPLETED
    assert purchase.payment_provider_id == "pi_recovered"
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("50")
