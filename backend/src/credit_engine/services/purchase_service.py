"""Purchase orchestrator: the purchase state machine and settlement transaction."""
from datetime import timedelta
from decimal import Decimal
from typing import Any, NoReturn, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.adapters.base import ChannelHandle, SettlementResult
from credit_engine.adapters.registry import ChannelRegistry, get_channel_registry
from credit_engine.config import settings
from credit_engine.exceptions import (
    BillingError,
    ChannelError,
    ChannelTimeout,
    ConflictingSubscription,
    CouponError,
    InvalidPurchaseState,
    NotFoundError,
    ValidationError,
)
from credit_engine.integrations.notification_service import NotificationService, dispatch
from credit_engine.metrics import (
    invoice_generation_failures_total,
    purchases_created_total,
    purchases_failed_total,
    purchases_settled_total,
    settlement_duplicates_total,
)
from credit_engine.models.base import utcnow
from credit_engine.models.coupon import CouponCategory
from credit_engine.models.ledger_entry import LedgerEntryType
from credit_engine.models.purchase import (
    PaymentChannel,
    PaymentProof,
    PaymentStatus,
    ProofStatus,
    Purchase,
    PurchaseSource,
    PurchaseType,
)
from credit_engine.models.subscription import BillingCycle, Package, PackageTier
from credit_engine.schemas.purchase import PaymentProofCreate
from credit_engine.services.coupon_service import CouponService
from credit_engine.services.invoice_service import InvoiceService, _format_credits
from credit_engine.services.ledger_service import LedgerService
from credit_engine.services.subscription_service import SubscriptionService
from credit_engine.utils.audit import log_audit, log_transition
from credit_engine.utils.currency import credits_for_amount

logger = structlog.get_logger(__name__)

COUPON_CATEGORY = {
    PurchaseType.CREDITS: CouponCategory.CREDITS,
    PurchaseType.SUBSCRIPTION: CouponCategory.SUBSCRIPTION,
}


class PurchaseService:
    """
    Purchase orchestrator.

    Owns the lifecycle ``pending -> processing -> completed | failed | canceled``
    and is the only code that settles purchases. Settlement is idempotent on
    the purchase id: a purchase completes once and its ledger, coupon and
    invoice side effects run once.

    Services flush, they do not commit. When an error is raised after a
    failed transition or an audit entry was flushed, the error carries
    ``state_changed`` so the session owner keeps that state.
    """

    def __init__(
        self,
        db: AsyncSession,
        channels: ChannelRegistry | None = None,
        notifier: NotificationService | None = None,
    ):
        """Initialize purchase service with database session and channel adapters."""
        self.db = db
        self.channels = channels or get_channel_registry()
        self.notifier = notifier or NotificationService()
        self.ledger = LedgerService(db, notifier=self.notifier)
        self.coupons = CouponService(db)
        self.invoices = InvoiceService(db)
        self.subscriptions = SubscriptionService(db, ledger=self.ledger)

    # Creation

    async def create(
        self,
        user_id: UUID,
        purchase_type: PurchaseType,
        amount: Optional[int] = None,
        package_id: Optional[UUID] = None,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        coupon_code: Optional[str] = None,
        currency: Optional[str] = None,
        billing_address: Optional[dict[str, Any]] = None,
        source: PurchaseSource = PurchaseSource.CHECKOUT,
    ) -> Purchase:
        """
        Create a pending purchase.

        Tax is not applied here; the invoice generator applies the tax rate
        configured at settlement time.

        Args:
            user_id: Buyer
            purchase_type: Credits or subscription
            amount: Credit purchase amount in minor units
            package_id: Package for subscription purchases
            billing_cycle: Subscription period
            coupon_code: Optional coupon code
            currency: ISO 4217 code for credit purchases
            billing_address: Address for the invoice
            source: Checkout or auto-topup

        Returns:
            Pending purchase, or completed when a coupon covers the whole total

        Raises:
            ValidationError: If the amount or package is not purchasable
            NotFoundError: If the package does not exist
            ConflictingSubscription: If buying a package while one is active
            CouponError: If the coupon code is rejected
        """
        if purchase_type == PurchaseType.CREDITS:
            if amount is None or amount <= 0:
                raise ValidationError("Purchase amount must be positive", amount=amount)
            currency = (currency or settings.default_currency).upper()
            subtotal = amount
            credits_amount = credits_for_amount(amount, currency, settings.credits_per_unit)
            credits_rate = (Decimal(1) / settings.credits_per_unit).quantize(Decimal("0.0001"))
        else:
            if package_id is None:
                raise ValidationError("package_id is required for subscription purchases")
            package = await self.db.get(Package, package_id)
            if package is None or not package.is_active:
                raise NotFoundError(f"Package {package_id} not found", package_id=str(package_id))
            if package.tier == PackageTier.FREE:
                raise ValidationError("The free package is assigned, not purchased")
            await self.subscriptions.ensure_no_active_subscription(user_id)
            currency = package.currency
            subtotal = package.price_for(billing_cycle)
            if subtotal <= 0:
                raise ValidationError(f"Package {package.name} has no {billing_cycle.value} price")
            credits_amount = Decimal(package.credits_included or 0)
            credits_rate = None

        discount_amount = 0
        coupon = None
        if coupon_code:
            validation = await self.coupons.validate(coupon_code, user_id, subtotal, COUPON_CATEGORY[purchase_type])
            discount_amount = validation.discount_amount
            coupon = validation.coupon

        total_amount = max(subtotal - discount_amount, 0)

        purchase = Purchase(
            user_id=user_id,
            purchase_type=purchase_type,
            source=source,
            amount=subtotal,
            credits_amount=credits_amount,
            credits_rate=credits_rate,
            subtotal=subtotal,
            discount_amount=discount_amount,
            tax_amount=0,
            total_amount=total_amount,
            currency=currency,
            coupon_id=coupon.id if coupon else None,
            coupon_code=coupon.code if coupon else None,
            package_id=package_id if purchase_type == PurchaseType.SUBSCRIPTION else None,
            billing_cycle=billing_cycle.value if purchase_type == PurchaseType.SUBSCRIPTION else None,
            payment_status=PaymentStatus.PENDING,
            extra_metadata={"billing_address": billing_address} if billing_address else {},
        )
        self.db.add(purchase)
        await self.db.flush()

        await log_audit(
            self.db,
            "purchase",
            purchase.id,
            "create",
            user_id=str(user_id),
            changes={"total_amount": total_amount, "discount_amount": discount_amount, "source": source.value},
        )
        purchases_created_total.labels(purchase_type=purchase_type.value, source=source.value).inc()
        logger.info(
            "purchase_created",
            purchase_id=str(purchase.id),
            user_id=str(user_id),
            purchase_type=purchase_type.value,
            total_amount=total_amount,
            credits_amount=str(credits_amount),
            coupon_code=purchase.coupon_code,
        )
        if total_amount == 0:
            return await self._settle_without_payment(purchase)
        return purchase

    # Reads

    async def get_purchase(self, purchase_id: UUID, user_id: Optional[UUID] = None) -> Purchase:
        """
        Get purchase by ID.

        Raises:
            NotFoundError: If the purchase does not exist or belongs to someone else
        """
        purchase = await self.db.get(Purchase, purchase_id)
        if purchase is None or (user_id is not None and purchase.user_id != user_id):
            raise NotFoundError(f"Purchase {purchase_id} not found")
        return purchase

    async def list_purchases(
        self,
        user_id: UUID,
        status: Optional[PaymentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Purchase]:
        query = select(Purchase).where(Purchase.user_id == user_id)
        if status:
            query = query.where(Purchase.payment_status == status)
        query = query.order_by(Purchase.created_at.desc()).offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _lock_purchase(self, purchase_id: UUID, user_id: Optional[UUID] = None) -> Purchase:
        result = await self.db.execute(
            select(Purchase)
            .where(Purchase.id == purchase_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        purchase = result.scalar_one_or_none()
        if purchase is None or (user_id is not None and purchase.user_id != user_id):
            raise NotFoundError(f"Purchase {purchase_id} not found")
        return purchase

    # Error trail

    async def _record_error(self, purchase: Purchase, error: BillingError) -> None:
        await log_audit(
            self.db,
            "purchase",
            purchase.id,
            "error",
            user_id=str(purchase.user_id),
            changes={"code": error.code, "message": error.message, "status": purchase.payment_status.value},
        )

    async def _raise(self, purchase: Purchase, error: BillingError) -> NoReturn:
        """Attach the error to the purchase audit trail and raise it, keeping flushed state."""
        await self._record_error(purchase, error)
        error.state_changed = True
        raise error

    # Settlement start

    async def begin_settlement(
        self,
        purchase_id: UUID,
        channel: PaymentChannel,
        user_id: Optional[UUID] = None,
        payment_method_ref: Optional[str] = None,
    ) -> ChannelHandle:
        """
        Move a pending purchase to processing and start its payment channel.

        Args:
            purchase_id: Purchase UUID
            channel: Channel to settle through
            user_id: When given, the purchase must belong to this user
            payment_method_ref: Saved payment method to charge off-session

        Returns:
            Channel handle (redirect URL, client secret or bank instructions)

        Raises:
            InvalidPurchaseState: If the purchase is not pending
            ChannelError: If the channel refuses; the purchase is failed
            ChannelTimeout: If the channel does not answer; the purchase stays processing
        """
        purchase = await self._lock_purchase(purchase_id, user_id)
        if purchase.payment_status != PaymentStatus.PENDING:
            await self._raise(
                purchase,
                InvalidPurchaseState(
                    f"Purchase {purchase.id} is {purchase.payment_status.value}; settlement can only start from pending",
                    purchase_id=str(purchase.id),
                ),
            )

        adapter = self.channels.get(channel)
        if payment_method_ref and not hasattr(adapter, "charge_saved_method"):
            raise ValidationError(f"{channel.value} cannot charge a saved payment method")

        purchase.payment_status = PaymentStatus.PROCESSING
        purchase.payment_method = channel
        purchase.processing_started_at = utcnow()
        await self.db.flush()
        await log_transition(
            self.db, "purchase", purchase.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING, channel=channel.value
        )

        try:
            if payment_method_ref:
                handle = await adapter.charge_saved_method(purchase, payment_method_ref)
            else:
                handle = await adapter.initiate(purchase)
        except ChannelTimeout as e:
            logger.warning("settlement_start_timeout", purchase_id=str(purchase.id), channel=channel.value)
            await self._raise(purchase, e)
        except ChannelError as e:
            await self._fail(purchase, e.message)
            await self._raise(purchase, e)

        purchase.payment_provider_id = handle.provider_reference
        purchase.extra_metadata = {**(purchase.extra_metadata or {}), "channel": handle.raw}
        await self.db.flush()

        logger.info(
            "settlement_started",
            purchase_id=str(purchase.id),
            channel=channel.value,
            provider_reference=handle.provider_reference,
        )
        return handle

    async def _settle_without_payment(self, purchase: Purchase) -> Purchase:
        """Complete a purchase a coupon fully discounted. No channel is involved."""
        purchase.payment_status = PaymentStatus.PROCESSING
        purchase.payment_method = PaymentChannel.NONE
        purchase.processing_started_at = utcnow()
        await self.db.flush()
        await log_transition(
            self.db,
            "purchase",
            purchase.id,
            PaymentStatus.PENDING,
            PaymentStatus.PROCESSING,
            channel=PaymentChannel.NONE.value,
        )
        result = SettlementResult(success=True, amount=0, currency=purchase.currency, raw={"path": "fully_discounted"})
        return await self._complete(purchase, result)

    # Settlement outcome

    async def on_settled(self, purchase_id: UUID, confirmation: Optional[dict[str, Any]] = None) -> Purchase:
        """
        Handle a settlement confirmation from any channel.

        Idempotent: a completed purchase is returned unchanged. Otherwise the
        confirmation is verified with the purchase's channel adapter and, on
        success, the settlement transaction runs.

        Args:
            purchase_id: Purchase UUID
            confirmation: Channel payload (session id, payment intent id, order id, proof approval)

        Returns:
            The purchase: completed, failed (channel reported failure) or still processing (pending)

        Raises:
            InvalidPurchaseState: If the purchase is not processing
            ChannelError: If the confirmation does not match the purchase; the purchase is failed
            ChannelTimeout: If the channel does not answer; the purchase stays processing
        """
        purchase = await self.get_purchase(purchase_id)
        if purchase.payment_status == PaymentStatus.COMPLETED:
            return self._duplicate(purchase)
        await self._require_processing(purchase)

        adapter = self.channels.get(purchase.payment_method)
        try:
            result = await adapter.confirm(purchase, confirmation or {})
        except ChannelTimeout as e:
            logger.warning("settlement_confirm_timeout", purchase_id=str(purchase.id))
            await self._raise(purchase, e)
        except ChannelError as e:
            await self._fail(purchase, e.message)
            await self._raise(purchase, e)

        return await self.apply_result(purchase.id, result)

    async def apply_result(self, purchase_id: UUID, result: SettlementResult) -> Purchase:
        """
        Apply a verified channel result to a processing purchase.

        Pending results leave the purchase processing; failures fail it;
        success runs the settlement transaction.
        """
        purchase = await self._lock_purchase(purchase_id)
        if purchase.payment_status == PaymentStatus.COMPLETED:
            return self._duplicate(purchase)
        await self._require_processing(purchase)

        if result.pending:
            if result.provider_reference and not purchase.payment_provider_id:
                purchase.payment_provider_id = result.provider_reference
                await self.db.flush()
            logger.info("settlement_pending", purchase_id=str(purchase.id), raw=result.raw)
            return purchase

        if not result.success:
            return await self._fail(purchase, result.failure_reason or "Payment was not completed")

        if result.amount is not None and result.amount != purchase.total_amount:
            await self._fail(purchase, f"Settled amount {result.amount} does not match total {purchase.total_amount}")
            await self._raise(
                purchase,
                ChannelError(
                    "Settled amount does not match the purchase total",
                    purchase_id=str(purchase.id),
                    expected=purchase.total_amount,
                    reported=result.amount,
                ),
            )
        if result.currency and result.currency.upper() != purchase.currency.upper():
            await self._fail(purchase, f"Settled currency {result.currency} does not match {purchase.currency}")
            await self._raise(
                purchase,
                ChannelError("Settled currency does not match the purchase", purchase_id=str(purchase.id)),
            )

        return await self._complete(purchase, result)

    def _duplicate(self, purchase: Purchase) -> Purchase:
        settlement_duplicates_total.labels(
            channel=purchase.payment_method.value if purchase.payment_method else "none"
        ).inc()
        logger.info("settlement_duplicate_ignored", purchase_id=str(purchase.id))
        return purchase

    async def _require_processing(self, purchase: Purchase) -> None:
        if purchase.payment_status == PaymentStatus.PROCESSING:
            return
        if purchase.payment_status in (PaymentStatus.CANCELED, PaymentStatus.FAILED):
            # Money may have moved for a purchase we no longer expect to settle
            logger.error(
                "late_settlement_confirmation",
                purchase_id=str(purchase.id),
                status=purchase.payment_status.value,
            )
        await self._raise(
            purchase,
            InvalidPurchaseState(
                f"Purchase {purchase.id} is {purchase.payment_status.value}, not processing",
                purchase_id=str(purchase.id),
            ),
        )

    async def _complete(self, purchase: Purchase, result: SettlementResult) -> Purchase:
        """Run the settlement transaction: all side effects or none of them."""
        channel = purchase.payment_method.value if purchase.payment_method else "none"
        try:
            async with self.db.begin_nested():
                purchase.payment_status = PaymentStatus.COMPLETED
                purchase.completed_at = utcnow()
                if result.provider_reference:
                    purchase.payment_provider_id = result.provider_reference
                purchase.payment_provider_response = result.raw

                subscription_id = None
                if purchase.purchase_type == PurchaseType.CREDITS:
                    await self.ledger.apply(
                        purchase.user_id,
                        Decimal(purchase.credits_amount),
                        LedgerEntryType.PURCHASE,
                        f"Credit purchase - {_format_credits(Decimal(purchase.credits_amount))} credits",
                        purchase_id=purchase.id,
                    )
                else:
                    subscription = await self.subscriptions.activate(
                        purchase.user_id,
                        purchase.package_id,
                        BillingCycle(purchase.billing_cycle),
                        purchase_id=purchase.id,
                    )
                    subscription_id = subscription.id

                if purchase.coupon_id:
                    await self.coupons.record_redemption(
                        purchase.coupon_id,
                        purchase.user_id,
                        purchase.id,
                        purchase.discount_amount,
                        subscription_id=subscription_id,
                    )

                await log_transition(
                    self.db,
                    "purchase",
                    purchase.id,
                    PaymentStatus.PROCESSING,
                    PaymentStatus.COMPLETED,
                    provider_reference=result.provider_reference,
                )
        except (CouponError, ConflictingSubscription) as e:
            # Settlement rolled back; the payment was taken and needs a refund
            await self.db.refresh(purchase)
            logger.error(
                "settlement_rejected_refund_required",
                purchase_id=str(purchase.id),
                error=e.code,
                provider_reference=result.provider_reference,
            )
            await self._fail(purchase, f"{e.message}; refund required")
            await self._raise(purchase, e)

        await self._generate_invoice(purchase)

        purchases_settled_total.labels(channel=channel, purchase_type=purchase.purchase_type.value).inc()
        logger.info(
            "purchase_completed",
            purchase_id=str(purchase.id),
            user_id=str(purchase.user_id),
            channel=channel,
            credits_amount=str(purchase.credits_amount),
        )

        if purchase.purchase_type == PurchaseType.CREDITS:
            description = f"{_format_credits(Decimal(purchase.credits_amount))} credits were added to your balance."
        else:
            description = "Your subscription is now active."
        await dispatch(self.notifier.settlement_completed(purchase.user_id, purchase.id, description))
        return purchase

    async def _generate_invoice(self, purchase: Purchase) -> None:
        """Generate the invoice; a failure is logged and left for the backfill job."""
        purchase_id, user_id = purchase.id, purchase.user_id
        try:
            async with self.db.begin_nested():
                await self.invoices.generate(purchase)
        except Exception as e:
            invoice_generation_failures_total.inc()
            logger.exception("invoice_generation_failed", purchase_id=str(purchase_id), exc_info=e)
            # The savepoint rollback expires anything it touched
            await self.db.refresh(purchase)
            await log_audit(
                self.db,
                "purchase",
                purchase_id,
                "error",
                user_id=str(user_id),
                changes={"code": "invoice_generation_failed", "message": str(e)},
            )

    async def _fail(self, purchase: Purchase, reason: str) -> Purchase:
        old = purchase.payment_status
        purchase.payment_status = PaymentStatus.FAILED
        purchase.failure_reason = reason
        purchase.failed_at = utcnow()
        await self.db.flush()

        await log_transition(self.db, "purchase", purchase.id, old, PaymentStatus.FAILED, reason=reason)
        purchases_failed_total.labels(
            channel=purchase.payment_method.value if purchase.payment_method else "none"
        ).inc()
        logger.warning("purchase_failed", purchase_id=str(purchase.id), reason=reason)
        return purchase

    async def on_failed(self, purchase_id: UUID, reason: str) -> Purchase:
        """
        Mark a purchase failed. No ledger, coupon or invoice side effects.

        A purchase that already failed or was canceled is returned unchanged.

        Raises:
            InvalidPurchaseState: If the purchase already completed
        """
        purchase = await self._lock_purchase(purchase_id)
        if purchase.payment_status in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
            logger.info("purchase_failure_ignored", purchase_id=str(purchase.id), status=purchase.payment_status.value)
            return purchase
        if purchase.payment_status == PaymentStatus.COMPLETED:
            await self._raise(
                purchase,
                InvalidPurchaseState(f"Purchase {purchase.id} already completed", purchase_id=str(purchase.id)),
            )
        return await self._fail(purchase, reason)

    async def cancel(self, purchase_id: UUID, user_id: Optional[UUID] = None, reason: Optional[str] = None) -> Purchase:
        """
        Cancel a pending or processing purchase. No ledger impact.

        Completed purchases are reversed with a compensating adjustment, never canceled.

        Raises:
            InvalidPurchaseState: If the purchase completed or failed
        """
        purchase = await self._lock_purchase(purchase_id, user_id)
        if purchase.payment_status == PaymentStatus.CANCELED:
            return purchase
        if purchase.payment_status.is_terminal:
            await self._raise(
                purchase,
                InvalidPurchaseState(
                    f"Purchase {purchase.id} is {purchase.payment_status.value} and cannot be canceled",
                    purchase_id=str(purchase.id),
                ),
            )

        old = purchase.payment_status
        purchase.payment_status = PaymentStatus.CANCELED
        purchase.canceled_at = utcnow()
        if reason:
            purchase.failure_reason = reason
        await self.db.flush()

        await log_transition(self.db, "purchase", purchase.id, old, PaymentStatus.CANCELED, reason=reason)
        logger.info("purchase_canceled", purchase_id=str(purchase.id), previous_status=old.value)
        return purchase

    # Bank transfer proofs

    async def submit_payment_proof(self, purchase_id: UUID, user_id: UUID, data: PaymentProofCreate) -> PaymentProof:
        """
        Attach an uploaded bank-transfer proof to a processing purchase.

        Raises:
            InvalidPurchaseState: If the purchase is not a processing bank transfer
                or a proof is already awaiting review
        """
        purchase = await self._lock_purchase(purchase_id, user_id)
        if (
            purchase.payment_method != PaymentChannel.BANK_TRANSFER
            or purchase.payment_status != PaymentStatus.PROCESSING
        ):
            await self._raise(
                purchase,
                InvalidPurchaseState(
                    "Payment proofs are only accepted for bank transfers awaiting payment",
                    purchase_id=str(purchase.id),
                ),
            )

        result = await self.db.execute(
            select(PaymentProof.id).where(
                PaymentProof.purchase_id == purchase.id,
                PaymentProof.status == ProofStatus.PENDING,
            )
        )
        if result.first() is not None:
            raise InvalidPurchaseState("A payment proof is already awaiting review", purchase_id=str(purchase.id))

        proof = PaymentProof(
            purchase_id=purchase.id,
            user_id=user_id,
            file_url=data.file_url,
            file_name=data.file_name,
            file_size=data.file_size,
            file_type=data.file_type,
            transaction_reference=data.transaction_reference,
            status=ProofStatus.PENDING,
        )
        self.db.add(proof)
        purchase.extra_metadata = {
            **(purchase.extra_metadata or {}),
            "transaction_reference": data.transaction_reference,
            "payment_proof_url": data.file_url,
        }
        await self.db.flush()

        await log_audit(self.db, "payment_proof", proof.id, "create", user_id=str(user_id))
        logger.info("payment_proof_submitted", purchase_id=str(purchase.id), proof_id=str(proof.id))
        return proof

    async def review_payment_proof(
        self,
        proof_id: UUID,
        reviewer: str,
        approved: bool,
        rejection_reason: Optional[str] = None,
    ) -> PaymentProof:
        """
        Approve or reject a bank-transfer proof.

        Approval settles the purchase through ``on_settled``. Rejection keeps
        the purchase processing so the user can submit a new proof.

        Raises:
            NotFoundError: If the proof does not exist
            InvalidPurchaseState: If the proof was already reviewed
        """
        result = await self.db.execute(
            select(PaymentProof)
            .where(PaymentProof.id == proof_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        proof = result.scalar_one_or_none()
        if proof is None:
            raise NotFoundError(f"Payment proof {proof_id} not found")
        if proof.status != ProofStatus.PENDING:
            raise InvalidPurchaseState(f"Payment proof {proof_id} was already {proof.status.value}")

        proof.status = ProofStatus.APPROVED if approved else ProofStatus.REJECTED
        proof.reviewed_by = reviewer
        proof.reviewed_at = utcnow()
        if not approved:
            proof.rejection_reason = rejection_reason
        await self.db.flush()

        await log_audit(
            self.db,
            "payment_proof",
            proof.id,
            "review",
            user_id=reviewer,
            changes={"status": {"old": ProofStatus.PENDING.value, "new": proof.status.value}, "reason": rejection_reason},
        )
        logger.info("payment_proof_reviewed", proof_id=str(proof.id), approved=approved, reviewer=reviewer)

        if approved:
            await self.on_settled(
                proof.purchase_id,
                {
                    "approved": True,
                    "proof_id": str(proof.id),
                    "transaction_reference": proof.transaction_reference,
                    "reviewed_by": reviewer,
                },
            )
        else:
            await dispatch(self.notifier.payment_proof_rejected(proof.user_id, proof.purchase_id, rejection_reason))
        return proof

    # Reconciliation

    async def find_stale(self, grace_period: timedelta, limit: int = 100) -> list[Purchase]:
        """Processing purchases older than the grace period, excluding manual bank transfers."""
        cutoff = utcnow() - grace_period
        result = await self.db.execute(
            select(Purchase)
            .where(
                Purchase.payment_status == PaymentStatus.PROCESSING,
                Purchase.processing_started_at < cutoff,
                Purchase.payment_method != PaymentChannel.BANK_TRANSFER,
            )
            .order_by(Purchase.processing_started_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def reconcile_stale(self, grace_period: Optional[timedelta] = None, limit: int = 100) -> dict[str, int]:
        """
        Re-query the provider for purchases stuck in processing.

        Each purchase is handled in its own savepoint so one failure does not
        block the rest.

        Returns:
            Counts by outcome: completed, failed, pending, errors
        """
        grace_period = grace_period or timedelta(minutes=settings.settlement_grace_period_minutes)
        summary = {"completed": 0, "failed": 0, "pending": 0, "errors": 0}

        for purchase in await self.find_stale(grace_period, limit):
            purchase_id = purchase.id
            try:
                async with self.db.begin_nested():
                    try:
                        adapter = self.channels.get(purchase.payment_method)
                        result = await adapter.query_status(purchase)
                        purchase = await self.apply_result(purchase_id, result)
                    except BillingError as e:
                        logger.warning("reconcile_purchase_error", purchase_id=str(purchase_id), error=e.code)
                        summary["errors"] += 1
                        continue
            except Exception as e:
                logger.exception("reconcile_purchase_failed", purchase_id=str(purchase_id), exc_info=e)
                summary["errors"] += 1
                continue

            if purchase.payment_status == PaymentStatus.COMPLETED:
                summary["completed"] += 1
            elif purchase.payment_status == PaymentStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["pending"] += 1

        logger.info("reconcile_stale_completed", **summary)
        return summary
