"""Subscription activator: package entitlements and tier exclusivity."""
import calendar
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.exceptions import ConflictingSubscription, NotFoundError
from credit_engine.metrics import subscriptions_activated_total
from credit_engine.models.base import utcnow
from credit_engine.models.ledger_entry import LedgerEntryType
from credit_engine.models.purchase import PaymentChannel, PaymentStatus, Purchase, PurchaseSource, PurchaseType
from credit_engine.models.subscription import BillingCycle, Package, PackageTier, Subscription, SubscriptionStatus
from credit_engine.services.ledger_service import LedgerService
from credit_engine.utils.audit import log_transition

logger = structlog.get_logger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end_for(start: datetime, cycle: BillingCycle) -> datetime:
    return add_months(start, 12 if cycle == BillingCycle.YEARLY else 1)


class SubscriptionService:
    """
    Service for activating and canceling subscriptions.

    A user holds at most one active subscription, free or paid. The check
    here gives the friendly error; the partial unique index on
    ``subscriptions`` backs it up under concurrency.
    """

    def __init__(self, db: AsyncSession, ledger: LedgerService | None = None):
        """Initialize subscription service with database session."""
        self.db = db
        self.ledger = ledger or LedgerService(db)

    async def get_active_subscription(self, user_id: UUID) -> Subscription | None:
        """
        Get the user's active subscription.

        Args:
            user_id: Account UUID

        Returns:
            Active subscription with its package, or None
        """
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    async def ensure_no_active_subscription(self, user_id: UUID) -> None:
        """
        Raises:
            ConflictingSubscription: If the user already has an active subscription
        """
        active = await self.get_active_subscription(user_id)
        if active:
            raise ConflictingSubscription(
                "You already have an active subscription",
                user_id=str(user_id),
                subscription_id=str(active.id),
            )

    async def _get_package(self, package_id: UUID) -> Package:
        package = await self.db.get(Package, package_id)
        if package is None or not package.is_active:
            raise NotFoundError(f"Package {package_id} not found", package_id=str(package_id))
        return package

    async def _create(
        self,
        user_id: UUID,
        package: Package,
        billing_cycle: BillingCycle,
        period_end: datetime,
        start: datetime,
        auto_renew: bool,
        purchase_id: Optional[UUID],
    ) -> Subscription:
        subscription = Subscription(
            user_id=user_id,
            package_id=package.id,
            purchase_id=purchase_id,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=billing_cycle,
            current_period_start=start,
            current_period_end=period_end,
            auto_renew=auto_renew,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(subscription)
        except IntegrityError as e:
            raise ConflictingSubscription(
                "You already have an active subscription",
                user_id=str(user_id),
            ) from e

        subscription.package = package
        return subscription

    async def _grant_credits(self, subscription: Subscription, package: Package, purchase_id: Optional[UUID]) -> None:
        credits = Decimal(package.credits_included or 0)
        if credits <= 0:
            return
        await self.ledger.apply(
            subscription.user_id,
            credits,
            LedgerEntryType.SUBSCRIPTION_CREDIT,
            f"Subscription credits - {package.name}",
            purchase_id=purchase_id,
            subscription_id=subscription.id,
        )

    async def activate(
        self,
        user_id: UUID,
        package_id: UUID,
        billing_cycle: BillingCycle,
        purchase_id: Optional[UUID] = None,
    ) -> Subscription:
        """
        Activate a package for a user.

        Args:
            user_id: Account UUID
            package_id: Package to activate
            billing_cycle: Monthly or yearly period
            purchase_id: Settled purchase paying for it, used as idempotency key

        Returns:
            Active subscription

        Raises:
            NotFoundError: If the package doesn't exist or is inactive
            ConflictingSubscription: If the user already has an active subscription
        """
        if purchase_id is not None:
            result = await self.db.execute(select(Subscription).where(Subscription.purchase_id == purchase_id))
            existing = result.scalar_one_or_none()
            if existing:
                return existing

        package = await self._get_package(package_id)
        await self.ensure_no_active_subscription(user_id)

        now = utcnow()
        subscription = await self._create(
            user_id,
            package,
            billing_cycle,
            period_end=period_end_for(now, billing_cycle),
            start=now,
            auto_renew=True,
            purchase_id=purchase_id,
        )
        await self._grant_credits(subscription, package, purchase_id)

        subscriptions_activated_total.labels(tier=package.tier.value, billing_cycle=billing_cycle.value).inc()
        logger.info(
            "subscription_activated",
            subscription_id=str(subscription.id),
            user_id=str(user_id),
            package=package.name,
            billing_cycle=billing_cycle.value,
        )
        return subscription

    async def assign_free_package(self, user_id: UUID) -> Subscription:
        """
        Assign the free package to a user.

        No money moves, so this completes a zero-amount purchase directly
        instead of going through a payment channel. The purchase id still keys
        the credit grant. Free periods run a year and do not auto-renew.

        Raises:
            ConflictingSubscription: If the user already has an active subscription
            NotFoundError: If no active free package exists
        """
        await self.ensure_no_active_subscription(user_id)

        result = await self.db.execute(
            select(Package)
            .where(Package.tier == PackageTier.FREE, Package.is_active.is_(True))
            .order_by(Package.created_at)
            .limit(1)
        )
        package = result.scalar_one_or_none()
        if package is None:
            raise NotFoundError("Free package not found")

        now = utcnow()
        purchase = Purchase(
            user_id=user_id,
            purchase_type=PurchaseType.SUBSCRIPTION,
            source=PurchaseSource.FREE_TIER,
            amount=0,
            credits_amount=Decimal(package.credits_included or 0),
            subtotal=0,
            discount_amount=0,
            tax_amount=0,
            total_amount=0,
            currency=package.currency,
            package_id=package.id,
            billing_cycle=BillingCycle.MONTHLY.value,
            payment_status=PaymentStatus.PENDING,
            extra_metadata={"auto_assigned": True},
        )
        self.db.add(purchase)
        await self.db.flush()

        purchase.payment_method = PaymentChannel.NONE
        purchase.payment_status = PaymentStatus.COMPLETED
        purchase.completed_at = now
        await log_transition(self.db, "purchase", purchase.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED, path="free_tier")

        subscription = await self._create(
            user_id,
            package,
            BillingCycle.MONTHLY,
            period_end=add_months(now, 12),
            start=now,
            auto_renew=False,
            purchase_id=purchase.id,
        )
        await self._grant_credits(subscription, package, purchase.id)

        subscriptions_activated_total.labels(tier=PackageTier.FREE.value, billing_cycle=BillingCycle.MONTHLY.value).inc()
        logger.info("free_package_assigned", user_id=str(user_id), subscription_id=str(subscription.id))
        return subscription

    async def cancel(self, user_id: UUID) -> Subscription:
        """
        Cancel the user's active subscription.

        Raises:
            NotFoundError: If there is no active subscription
        """
        subscription = await self.get_active_subscription(user_id)
        if subscription is None:
            raise NotFoundError("No active subscription", user_id=str(user_id))

        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = utcnow()
        subscription.auto_renew = False
        await self.db.flush()

        await log_transition(
            self.db, "subscription", subscription.id, SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED
        )
        logger.info("subscription_canceled", subscription_id=str(subscription.id), user_id=str(user_id))
        return subscription
