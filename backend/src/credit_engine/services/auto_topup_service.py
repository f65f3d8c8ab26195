"""Automatic top-up of low credit balances."""
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.adapters.registry import ChannelRegistry
from credit_engine.exceptions import BillingError
from credit_engine.integrations.notification_service import NotificationService
from credit_engine.metrics import auto_topups_triggered_total
from credit_engine.models.credit_balance import CreditBalance
from credit_engine.models.purchase import PaymentChannel, PaymentStatus, Purchase, PurchaseSource, PurchaseType
from credit_engine.services.purchase_service import PurchaseService

logger = structlog.get_logger(__name__)


class AutoTopupService:
    """
    Creates and settles a credit purchase when a balance drops below the
    account's auto-topup threshold.

    Top-ups charge the saved card off-session. Failures are logged and never
    propagate to the debit that triggered them.
    """

    def __init__(
        self,
        db: AsyncSession,
        channels: ChannelRegistry | None = None,
        notifier: NotificationService | None = None,
    ):
        self.db = db
        self.purchases = PurchaseService(db, channels=channels, notifier=notifier)

    async def _has_open_topup(self, account_id: UUID) -> bool:
        result = await self.db.execute(
            select(Purchase.id)
            .where(
                Purchase.user_id == account_id,
                Purchase.source == PurchaseSource.AUTO_TOPUP,
                Purchase.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.PROCESSING]),
            )
            .limit(1)
        )
        return result.first() is not None

    async def evaluate(self, balance: CreditBalance) -> Optional[Purchase]:
        """
        Trigger a top-up if the balance qualifies.

        Args:
            balance: Balance row after the debit

        Returns:
            The top-up purchase, or None when nothing was triggered
        """
        if not balance.auto_topup_enabled or not balance.auto_topup_amount:
            return None
        if balance.auto_topup_threshold is None or balance.balance >= balance.auto_topup_threshold:
            return None
        if (
            balance.default_payment_channel != PaymentChannel.STRIPE_CARD.value
            or not balance.default_payment_method_ref
        ):
            logger.warning("auto_topup_no_payment_method", account_id=str(balance.account_id))
            return None
        if await self._has_open_topup(balance.account_id):
            logger.info("auto_topup_already_open", account_id=str(balance.account_id))
            return None

        account_id = balance.account_id
        try:
            async with self.db.begin_nested():
                purchase = await self.purchases.create(
                    account_id,
                    PurchaseType.CREDITS,
                    amount=balance.auto_topup_amount,
                    source=PurchaseSource.AUTO_TOPUP,
                )
            auto_topups_triggered_total.inc()
            logger.info(
                "auto_topup_triggered",
                account_id=str(account_id),
                purchase_id=str(purchase.id),
                amount=balance.auto_topup_amount,
            )

            handle = await self.purchases.begin_settlement(
                purchase.id,
                PaymentChannel.STRIPE_CARD,
                payment_method_ref=balance.default_payment_method_ref,
            )
            if handle.raw.get("status") == "succeeded":
                purchase = await self.purchases.on_settled(
                    purchase.id, {"payment_intent_id": handle.provider_reference}
                )
        except BillingError as e:
            logger.warning("auto_topup_failed", account_id=str(account_id), error=e.code, message=e.message)
            return None

        return purchase
