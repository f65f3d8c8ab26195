"""Integration tests for package subscriptions."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.exceptions import ConflictingSubscription, NotFoundError, ValidationError
from credit_engine.models import Package
from credit_engine.models.ledger_entry import LedgerEntry, LedgerEntryType
from credit_engine.models.purchase import PaymentChannel, PaymentStatus, Purchase, PurchaseSource, PurchaseType
from credit_engine.models.subscription import BillingCycle, SubscriptionStatus
from credit_engine.services.invoice_service import InvoiceService
from credit_engine.services.ledger_service import LedgerService
from credit_engine.services.purchase_service import PurchaseService
from credit_engine.services.subscription_service import SubscriptionService, add_months, period_end_for
from tests.utils.factories import PackageFactory


async def _subscribe(
    service: PurchaseService,
    user_id: UUID,
    package: Package,
    cycle: BillingCycle = BillingCycle.MONTHLY,
) -> Purchase:
    purchase = await service.create(user_id, PurchaseType.SUBSCRIPTION, package_id=package.id, billing_cycle=cycle)
    await service.begin_settlement(purchase.id, PaymentChannel.STRIPE_CHECKOUT)
    return await service.on_settled(purchase.id, {"session_id": "cs_test"})


@pytest.mark.asyncio
async def test_settled_subscription_activates_and_grants_credits(
    db_session: AsyncSession, account_id: UUID, channels, paid_package: Package
) -> None:
    """Test that paying for a package activates it and credits its included credits."""
    service = PurchaseService(db_session, channels=channels)
    purchase = await _subscribe(service, account_id, paid_package)

    assert purchase.payment_status == PaymentStatus.COMPLETED
    assert purchase.total_amount == 2900
    assert purchase.credits_rate is None

    subscription = await SubscriptionService(db_session).get_active_subscription(account_id)
    assert subscription is not None
    assert subscription.package_id == paid_package.id
    assert subscription.purchase_id == purchase.id
    assert subscription.billing_cycle == BillingCycle.MONTHLY
    assert subscription.auto_renew is True
    assert subscription.current_period_end == add_months(subscription.current_period_start, 1)

    entry = (
        await db_session.execute(select(LedgerEntry).where(LedgerEntry.purchase_id == purchase.id))
    ).scalar_one()
    assert entry.type == LedgerEntryType.SUBSCRIPTION_CREDIT
    assert entry.amount == Decimal("200")
    assert entry.subscription_id == subscription.id
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("200")

    invoice = await InvoiceService(db_session).get_invoice_for_purchase(purchase.id)
    assert invoice.subscription_id == subscription.id
    assert invoice.items[0]["description"] == "Subscription - Pro (monthly)"


@pytest.mark.asyncio
async def test_yearly_subscription_price_and_period(
    db_session: AsyncSession, account_id: UUID, channels, paid_package: Package
) -> None:
    """Test that the yearly cycle uses the yearly price and a twelve-month period."""
    purchase = await _subscribe(PurchaseService(db_session, channels=channels), account_id, paid_package, BillingCycle.YEARLY)

    assert purchase.subtotal == 29000
    subscription = await SubscriptionService(db_session).get_active_subscription(account_id)
    assert subscription.billing_cycle == BillingCycle.YEARLY
    assert subscription.current_period_end == add_months(subscription.current_period_start, 12)


@pytest.mark.asyncio
async def test_second_subscription_is_rejected_at_creation(
    db_session: AsyncSession, account_id: UUID, channels, paid_package: Package
) -> None:
    """Test that a user with an active package cannot start buying another."""
    service = PurchaseService(db_session, channels=channels)
    await _subscribe(service, account_id, paid_package)

    with pytest.raises(ConflictingSubscription) as exc_info:
        await service.create(account_id, PurchaseType.SUBSCRIPTION, package_id=paid_package.id)

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_conflict_at_settlement_fails_with_refund_required(
    db_session: AsyncSession, account_id: UUID, channels, paid_package: Package, free_package: Package
) -> None:
    """Test that a package activated meanwhile fails the paid settlement without granting credits."""
    service = PurchaseService(db_session, channels=channels)
    purchase = await service.create(account_id, PurchaseType.SUBSCRIPTION, package_id=paid_package.id)
    await service.begin_settlement(purchase.id, PaymentChannel.STRIPE_CHECKOUT)
    await SubscriptionService(db_session).assign_free_package(account_id)

    with pytest.raises(ConflictingSubscription):
        await service.on_settled(purchase.id, {"session_id": "cs_test"})

    assert purchase.payment_status == PaymentStatus.FAILED
    assert purchase.failure_reason.endswith("refund required")
    subscription = await SubscriptionService(db_session).get_active_subscription(account_id)
    assert subscription.package_id == free_package.id
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("50")
    assert await InvoiceService(db_session).get_invoice_for_purchase(purchase.id) is None


@pytest.mark.asyncio
async def test_assign_free_package(
    db_session: AsyncSession, account_id: UUID, free_package: Package
) -> None:
    """Test that the free package completes a zero purchase and grants its credits."""
    subscriptions = SubscriptionService(db_session)

    subscription = await subscriptions.assign_free_package(account_id)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.package_id == free_package.id
    assert subscription.auto_renew is False
    assert subscription.current_period_end == add_months(subscription.current_period_start, 12)

    purchase = await db_session.get(Purchase, subscription.purchase_id)
    assert purchase.source == PurchaseSource.FREE_TIER
    assert purchase.payment_status == PaymentStatus.COMPLETED
    assert purchase.payment_method == PaymentChannel.NONE
    assert purchase.total_amount == 0
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("50")

    assert await InvoiceService(db_session).get_invoice_for_purchase(purchase.id) is None
    assert await InvoiceService(db_session).backfill_missing_invoices() == 0

    with pytest.raises(ConflictingSubscription):
        await subscriptions.assign_free_package(account_id)


@pytest.mark.asyncio
async def test_free_package_cannot_be_bought(
    db_session: AsyncSession, account_id: UUID, channels, free_package: Package
) -> None:
    """Test that the free package is only assigned, never purchased."""
    with pytest.raises(ValidationError):
        await PurchaseService(db_session, channels=channels).create(
            account_id, PurchaseType.SUBSCRIPTION, package_id=free_package.id
        )


@pytest.mark.asyncio
async def test_subscription_purchase_requires_known_package(
    db_session: AsyncSession, account_id: UUID, channels, paid_package: Package
) -> None:
    """Test package validation for subscription purchases."""
    service = PurchaseService(db_session, channels=channels)

    with pytest.raises(ValidationError):
        await service.create(account_id, PurchaseType.SUBSCRIPTION)
    with pytest.raises(NotFoundError):
        await service.create(account_id, PurchaseType.SUBSCRIPTION, package_id=account_id)

    paid_package.is_active = False
    await db_session.flush()
    with pytest.raises(NotFoundError):
        await service.create(account_id, PurchaseType.SUBSCRIPTION, package_id=paid_package.id)


@pytest.mark.asyncio
async def test_yearly_price_defaults_to_twelve_months(
    db_session: AsyncSession, account_id: UUID, channels
) -> None:
    """Test yearly pricing for a package without a yearly price."""
    package = Package(**PackageFactory.create({"monthly_price": 1500, "yearly_price": None}))
    db_session.add(package)
    await db_session.flush()

    purchase = await PurchaseService(db_session, channels=channels).create(
        account_id, PurchaseType.SUBSCRIPTION, package_id=package.id, billing_cycle=BillingCycle.YEARLY
    )

    assert purchase.subtotal == 18000
    assert purchase.total_amount == 18000


@pytest.mark.asyncio
async def test_assign_free_package_without_free_tier(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that assignment fails cleanly when no free package is configured."""
    with pytest.raises(NotFoundError):
        await SubscriptionService(db_session).assign_free_package(account_id)


@pytest.mark.asyncio
async def test_cancel_keeps_credits_and_allows_new_package(
    db_session: AsyncSession, account_id: UUID, channels, paid_package: Package
) -> None:
    """Test that canceling ends the subscription but leaves granted credits."""
    service = PurchaseService(db_session, channels=channels)
    await _subscribe(service, account_id, paid_package)
    subscriptions = SubscriptionService(db_session)

    canceled = await subscriptions.cancel(account_id)

    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.canceled_at is not None
    assert canceled.auto_renew is False
    assert await subscriptions.get_active_subscription(account_id) is None
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("200")

    with pytest.raises(NotFoundError):
        await subscriptions.cancel(account_id)

    await _subscribe(service, account_id, paid_package)
    assert (await LedgerService(db_session).get_balance(account_id)).balance == Decimal("400")


@pytest.mark.parametrize(
    "start,months,expected",
    [
        (datetime(2026, 1, 31, 12, 0), 1, datetime(2026, 2, 28, 12, 0)),
        (datetime(2028, 1, 31), 1, datetime(2028, 2, 29)),
        (datetime(2026, 11, 15), 3, datetime(2027, 2, 15)),
        (datetime(2026, 3, 31), 12, datetime(2027, 3, 31)),
    ],
)
def test_add_months_clamps_day(start: datetime, months: int, expected: datetime) -> None:
    """Test calendar month arithmetic at month ends."""
    assert add_months(start, months) == expected


def test_period_end_for_cycle() -> None:
    """Test period lengths per billing cycle."""
    start = datetime(2026, 10, 19)
    assert period_end_for(start, BillingCycle.MONTHLY) == datetime(2026, 11, 19)
    assert period_end_for(start, BillingCycle.YEARLY) == datetime(2027, 10, 19)
