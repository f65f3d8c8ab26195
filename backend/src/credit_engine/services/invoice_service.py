"""Invoice generator for settled purchases and subscription periods."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.config import settings
from credit_engine.exceptions import InvoiceGenerationFailure, NotFoundError
from credit_engine.integrations.tax_service import TaxService
from credit_engine.metrics import invoice_generation_failures_total, invoices_generated_total
from credit_engine.models.base import utcnow
from credit_engine.models.invoice import Invoice, InvoiceSequence, InvoiceStatus
from credit_engine.models.purchase import PaymentStatus, Purchase, PurchaseSource, PurchaseType
from credit_engine.models.subscription import BillingCycle, Package, Subscription
from credit_engine.utils.currency import round_half_up

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InvoiceTotals:
    """Invoice amounts in minor units."""

    subtotal: int
    discount_amount: int
    taxable_amount: int
    tax_amount: int
    total_amount: int


def calculate_totals(subtotal: int, discount_amount: int, tax_rate: Decimal) -> InvoiceTotals:
    """
    Compute invoice totals.

    Tax applies to the discounted subtotal, which never goes below zero. Tax
    is rounded half-up to the minor unit, so
    ``total == round_half_up(max(0, subtotal - discount) * (1 + tax_rate))``.

    Example:
        >>> calculate_totals(10000, 2000, Decimal("0.05")).total_amount
        8400
    """
    if subtotal < 0 or discount_amount < 0:
        raise ValueError("Invoice amounts must not be negative")
    if tax_rate < 0:
        raise ValueError("Tax rate must not be negative")

    taxable = max(0, subtotal - discount_amount)
    tax_amount = round_half_up(Decimal(taxable) * Decimal(tax_rate))
    return InvoiceTotals(
        subtotal=subtotal,
        discount_amount=min(discount_amount, subtotal),
        taxable_amount=taxable,
        tax_amount=tax_amount,
        total_amount=taxable + tax_amount,
    )


def _format_credits(credits: Decimal) -> str:
    if credits == credits.to_integral_value():
        return str(int(credits))
    return f"{credits:.2f}"


class InvoiceService:
    """Service layer for invoice operations."""

    def __init__(self, db: AsyncSession):
        """Initialize invoice service with database session."""
        self.db = db

    async def next_invoice_number(self, tenant_id: Optional[str] = None) -> str:
        """
        Allocate the next invoice number for a tenant.

        The sequence row stays locked until the caller's transaction ends, so
        numbers are strictly increasing with no duplicates.

        Format: {prefix}-{sequential_number} (e.g., INV-000001)

        Returns:
            Invoice number string
        """
        tenant_id = tenant_id or settings.tenant_id
        sequence = await self._lock_sequence(tenant_id)
        if sequence is None:
            try:
                async with self.db.begin_nested():
                    self.db.add(InvoiceSequence(tenant_id=tenant_id, last_number=0))
            except IntegrityError:
                logger.info("invoice_sequence_created_concurrently", tenant_id=tenant_id)
            sequence = await self._lock_sequence(tenant_id)

        sequence.last_number += 1
        await self.db.flush()
        return f"{settings.invoice_prefix}-{sequence.last_number:06d}"

    async def _lock_sequence(self, tenant_id: str) -> Optional[InvoiceSequence]:
        result = await self.db.execute(
            select(InvoiceSequence)
            .where(InvoiceSequence.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def generate(
        self,
        source: Union[Purchase, Subscription],
        billing_address: Optional[dict[str, Any]] = None,
        tax_rate: Optional[Decimal] = None,
    ) -> Invoice:
        """
        Generate the invoice for a settled purchase or a subscription period.

        A purchase gets at most one invoice; asking again returns the existing one.

        Args:
            source: Completed purchase, or subscription for a period invoice
            billing_address: Address printed on the invoice
            tax_rate: Rate to apply; looked up from tax configuration when omitted

        Returns:
            Generated invoice

        Raises:
            InvoiceGenerationFailure: If the source cannot be invoiced
        """
        if isinstance(source, Purchase):
            return await self._generate_for_purchase(source, billing_address, tax_rate)
        return await self._generate_for_subscription(source, billing_address, tax_rate)

    async def _resolve_tax_rate(self, tax_rate: Optional[Decimal], billing_address: Optional[dict]) -> Decimal:
        if tax_rate is not None:
            return Decimal(tax_rate)
        jurisdiction = (billing_address or {}).get("country")
        return await TaxService(self.db).get_tax_rate(jurisdiction)

    async def _generate_for_purchase(
        self,
        purchase: Purchase,
        billing_address: Optional[dict[str, Any]],
        tax_rate: Optional[Decimal],
    ) -> Invoice:
        existing = await self.get_invoice_for_purchase(purchase.id)
        if existing:
            return existing

        if purchase.payment_status != PaymentStatus.COMPLETED:
            raise InvoiceGenerationFailure(
                f"Purchase {purchase.id} is {purchase.payment_status.value}, not completed",
                purchase_id=str(purchase.id),
            )

        billing_address = billing_address or (purchase.extra_metadata or {}).get("billing_address")
        rate = await self._resolve_tax_rate(tax_rate, billing_address)
        totals = calculate_totals(purchase.subtotal, purchase.discount_amount, rate)

        if purchase.purchase_type == PurchaseType.CREDITS:
            description = f"Credit Purchase - {_format_credits(Decimal(purchase.credits_amount))} credits"
            subscription_id = None
        else:
            package = await self.db.get(Package, purchase.package_id) if purchase.package_id else None
            package_name = package.name if package else "Package"
            description = f"Subscription - {package_name} ({purchase.billing_cycle})"
            subscription_id = await self._subscription_id_for_purchase(purchase.id)

        items = [
            {
                "description": description,
                "quantity": 1,
                "unit_price": purchase.subtotal,
                "total": purchase.subtotal,
            }
        ]

        invoice = await self._persist(
            user_id=purchase.user_id,
            purchase_id=purchase.id,
            subscription_id=subscription_id,
            currency=purchase.currency,
            totals=totals,
            tax_rate=rate,
            discount_code=purchase.coupon_code,
            items=items,
            billing_address=billing_address,
            status=InvoiceStatus.PAID,
            paid_at=purchase.completed_at or utcnow(),
        )

        purchase.tax_rate = rate
        purchase.tax_amount = totals.tax_amount
        await self.db.flush()
        return invoice

    async def _generate_for_subscription(
        self,
        subscription: Subscription,
        billing_address: Optional[dict[str, Any]],
        tax_rate: Optional[Decimal],
    ) -> Invoice:
        package = subscription.package or await self.db.get(Package, subscription.package_id)
        if package is None:
            raise InvoiceGenerationFailure(
                f"Package {subscription.package_id} not found",
                subscription_id=str(subscription.id),
            )

        rate = await self._resolve_tax_rate(tax_rate, billing_address)
        subtotal = package.price_for(subscription.billing_cycle)
        totals = calculate_totals(subtotal, 0, rate)
        period = (
            f"{subscription.current_period_start:%Y-%m-%d} - {subscription.current_period_end:%Y-%m-%d}"
        )
        cycle = subscription.billing_cycle.value if isinstance(subscription.billing_cycle, BillingCycle) else subscription.billing_cycle
        items = [
            {
                "description": f"Subscription - {package.name} ({cycle}) {period}",
                "quantity": 1,
                "unit_price": subtotal,
                "total": subtotal,
            }
        ]

        return await self._persist(
            user_id=subscription.user_id,
            purchase_id=None,
            subscription_id=subscription.id,
            currency=package.currency,
            totals=totals,
            tax_rate=rate,
            discount_code=None,
            items=items,
            billing_address=billing_address,
            status=InvoiceStatus.SENT,
            paid_at=None,
        )

    async def _persist(
        self,
        user_id: UUID,
        purchase_id: Optional[UUID],
        subscription_id: Optional[UUID],
        currency: str,
        totals: InvoiceTotals,
        tax_rate: Decimal,
        discount_code: Optional[str],
        items: list[dict[str, Any]],
        billing_address: Optional[dict[str, Any]],
        status: InvoiceStatus,
        paid_at: Optional[datetime],
    ) -> Invoice:
        invoice_number = await self.next_invoice_number()
        today = utcnow().date()

        invoice = Invoice(
            invoice_number=invoice_number,
            user_id=user_id,
            purchase_id=purchase_id,
            subscription_id=subscription_id,
            invoice_date=today,
            due_date=today + timedelta(days=settings.invoice_due_days),
            currency=currency,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            discount_code=discount_code,
            tax_rate=tax_rate,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            status=status,
            paid_at=paid_at,
            items=items,
            billing_address=billing_address,
        )
        self.db.add(invoice)
        await self.db.flush()

        invoices_generated_total.labels(currency=currency).inc()
        logger.info(
            "invoice_generated",
            invoice_id=str(invoice.id),
            invoice_number=invoice_number,
            purchase_id=str(purchase_id) if purchase_id else None,
            subscription_id=str(subscription_id) if subscription_id else None,
            total_amount=totals.total_amount,
        )
        return invoice

    async def _subscription_id_for_purchase(self, purchase_id: UUID) -> Optional[UUID]:
        result = await self.db.execute(select(Subscription.id).where(Subscription.purchase_id == purchase_id))
        return result.scalar_one_or_none()

    async def get_invoice_for_purchase(self, purchase_id: UUID) -> Invoice | None:
        result = await self.db.execute(select(Invoice).where(Invoice.purchase_id == purchase_id))
        return result.scalar_one_or_none()

    async def get_invoice(self, invoice_id: UUID, user_id: Optional[UUID] = None) -> Invoice:
        """
        Get invoice by ID.

        Args:
            invoice_id: Invoice UUID
            user_id: When given, the invoice must belong to this user

        Raises:
            NotFoundError: If the invoice does not exist or belongs to someone else
        """
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None or (user_id is not None and invoice.user_id != user_id):
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def list_invoices(
        self,
        user_id: UUID,
        status: Optional[InvoiceStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        """List a user's invoices, newest number first."""
        query = select(Invoice).where(Invoice.user_id == user_id)
        if status:
            query = query.where(Invoice.status == status)
        query = query.order_by(Invoice.invoice_number.desc()).offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def backfill_missing_invoices(self, limit: int = 100) -> int:
        """
        Generate invoices for completed purchases that settled without one.

        Each purchase is invoiced inside its own savepoint so one failure does
        not block the rest.

        Returns:
            Number of invoices generated
        """
        query = (
            select(Purchase)
            .outerjoin(Invoice, Invoice.purchase_id == Purchase.id)
            .where(
                Purchase.payment_status == PaymentStatus.COMPLETED,
                Purchase.source != PurchaseSource.FREE_TIER,
                Invoice.id.is_(None),
            )
            .order_by(Purchase.completed_at)
            .limit(limit)
        )
        result = await self.db.execute(query)
        purchases = list(result.scalars().all())

        generated = 0
        for purchase in purchases:
            purchase_id = purchase.id
            try:
                async with self.db.begin_nested():
                    await self.generate(purchase)
                generated += 1
            except Exception as e:
                invoice_generation_failures_total.inc()
                logger.exception("invoice_backfill_failed", purchase_id=str(purchase_id), exc_info=e)

        if purchases:
            logger.info("invoice_backfill_completed", candidates=len(purchases), generated=generated)
        return generated
