"""Integration tests for bank transfers settled by proof review."""
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.exceptions import InvalidPurchaseState, NotFoundError
from credit_engine.models.base import utcnow
from credit_engine.models.purchase import PaymentChannel, PaymentStatus, ProofStatus, PurchaseType
from credit_engine.schemas.purchase import PaymentProofCreate
from credit_engine.services.invoice_service import InvoiceService
from credit_engine.services.ledger_service import LedgerService
from credit_engine.services.purchase_service import PurchaseService
from tests.utils.factories import PaymentProofFactory


async def _bank_transfer(service: PurchaseService, user_id: UUID, amount: int = 2000):
    purchase = await service.create(user_id, PurchaseType.CREDITS, amount=amount)
    handle = await service.begin_settlement(purchase.id, PaymentChannel.BANK_TRANSFER, user_id=user_id)
    return purchase, handle


@pytest.mark.asyncio
async def test_bank_transfer_issues_instructions(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that starting a bank transfer returns instructions and waits for a proof."""
    purchase, handle = await _bank_transfer(PurchaseService(db_session, channels=channels), account_id)

    assert purchase.payment_status == PaymentStatus.PROCESSING
    assert handle.redirect_url is None
    assert handle.instructions["reference"] == str(purchase.id)
    assert handle.instructions["amount"] == "$20.00 USD"


@pytest.mark.asyncio
async def test_approved_proof_settles_purchase(
    db_session: AsyncSession, account_id: UUID, channels, notifier
) -> None:
    """Test that approving a proof credits the balance and invoices the purchase."""
    service = PurchaseService(db_session, channels=channels, notifier=notifier)
    purchase, _ = await _bank_transfer(service, account_id)

    proof = await service.submit_payment_proof(
        purchase.id, account_id, PaymentProofCreate(**PaymentProofFactory.create({"transaction_reference": "TRX-1"}))
    )
    assert proof.status == ProofStatus.PENDING
    assert purchase.extra_metadata["transaction_reference"] == "TRX-1"

    reviewed = await service.review_payment_proof(proof.id, reviewer="finance@example.test", approved=True)

    assert reviewed.status == ProofStatus.APPROVED
    assert reviewed.reviewed_by == "finance@example.test"
    assert reviewed.reviewed_at is not None
    assert purchase.payment_status == PaymentStatus.COMPLETED
    assert purchase.payment_provider_id == "TRX-1"
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("100")
    assert await InvoiceService(db_session).get_invoice_for_purchase(purchase.id) is not None


@pytest.mark.asyncio
async def test_rejected_proof_allows_resubmission(
    db_session: AsyncSession, account_id: UUID, channels, notifier
) -> None:
    """Test that a rejected proof keeps the purchase open for a new proof."""
    service = PurchaseService(db_session, channels=channels, notifier=notifier)
    purchase, _ = await _bank_transfer(service, account_id)

    first = await service.submit_payment_proof(purchase.id, account_id, PaymentProofCreate(**PaymentProofFactory.create()))
    with pytest.raises(InvalidPurchaseState):
        await service.submit_payment_proof(purchase.id, account_id, PaymentProofCreate(**PaymentProofFactory.create()))

    rejected = await service.review_payment_proof(
        first.id, reviewer="finance@example.test", approved=False, rejection_reason="Amount does not match"
    )
    assert rejected.status == ProofStatus.REJECTED
    assert rejected.rejection_reason == "Amount does not match"
    assert purchase.payment_status == PaymentStatus.PROCESSING
    assert "payment_proof_rejected" in notifier.types()
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("0")

    second = await service.submit_payment_proof(purchase.id, account_id, PaymentProofCreate(**PaymentProofFactory.create()))
    await service.review_payment_proof(second.id, reviewer="finance@example.test", approved=True)

    assert purchase.payment_status == PaymentStatus.COMPLETED
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("100")


@pytest.mark.asyncio
async def test_proof_review_happens_once(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that a reviewed proof cannot be reviewed again."""
    service = PurchaseService(db_session, channels=channels)
    purchase, _ = await _bank_transfer(service, account_id)
    proof = await service.submit_payment_proof(purchase.id, account_id, PaymentProofCreate(**PaymentProofFactory.create()))
    await service.review_payment_proof(proof.id, reviewer="finance@example.test", approved=True)

    with pytest.raises(InvalidPurchaseState):
        await service.review_payment_proof(proof.id, reviewer="finance@example.test", approved=False)
    with pytest.raises(NotFoundError):
        await service.review_payment_proof(uuid4(), reviewer="finance@example.test", approved=True)

    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("100")


@pytest.mark.asyncio
async def test_proof_requires_processing_bank_transfer(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that proofs are refused for other channels and for someone else's purchase."""
    service = PurchaseService(db_session, channels=channels)
    card = await service.create(account_id, PurchaseType.CREDITS, amount=1000)
    await service.begin_settlement(card.id, PaymentChannel.STRIPE_CHECKOUT)
    pending = await service.create(account_id, PurchaseType.CREDITS, amount=1000)
    bank, _ = await _bank_transfer(service, account_id)

    with pytest.raises(InvalidPurchaseState):
        await service.submit_payment_proof(card.id, account_id, PaymentProofCreate(**PaymentProofFactory.create()))
    with pytest.raises(InvalidPurchaseState):
        await service.submit_payment_proof(pending.id, account_id, PaymentProofCreate(**PaymentProofFactory.create()))
    with pytest.raises(NotFoundError):
        await service.submit_payment_proof(bank.id, uuid4(), PaymentProofCreate(**PaymentProofFactory.create()))


@pytest.mark.asyncio
async def test_confirmation_without_approval_keeps_waiting(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that a bank transfer only settles through an approved proof."""
    service = PurchaseService(db_session, channels=channels)
    purchase, _ = await _bank_transfer(service, account_id)

    result = await service.on_settled(purchase.id, {"approved": True})

    assert result.payment_status == PaymentStatus.PROCESSING


@pytest.mark.asyncio
async def test_bank_transfers_are_not_reconciled(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test that stale bank transfers are left for manual review."""
    service = PurchaseService(db_session, channels=channels)
    bank, _ = await _bank_transfer(service, account_id)
    card = await service.create(account_id, PurchaseType.CREDITS, amount=1000)
    await service.begin_settlement(card.id, PaymentChannel.STRIPE_CHECKOUT)
    bank.processing_started_at = utcnow() - timedelta(days=3)
    card.processing_started_at = utcnow() - timedelta(days=3)
    await db_session.flush()

    stale = await service.find_stale(timedelta(minutes=30))

    assert [p.id for p in stale] == [card.id]
