"""Ledger store: the only writer of credit balances."""
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.config import settings
from credit_engine.exceptions import InsufficientFunds, ValidationError
from credit_engine.integrations.notification_service import NotificationService, dispatch
from credit_engine.metrics import insufficient_funds_total, ledger_entries_total
from credit_engine.models.credit_balance import CreditBalance
from credit_engine.models.ledger_entry import LedgerEntry, LedgerEntryType
from credit_engine.models.purchase import PaymentChannel
from credit_engine.utils.currency import quantize_credits

logger = structlog.get_logger(__name__)

CREDITING_TYPES = (LedgerEntryType.PURCHASE, LedgerEntryType.SUBSCRIPTION_CREDIT)


class LedgerService:
    """
    Service for credit balances and the append-only ledger.

    Every change goes through ``apply``, which locks the account's balance
    row so concurrent debits and credits serialize.
    """

    def __init__(self, db: AsyncSession, notifier: NotificationService | None = None):
        """Initialize ledger service with database session."""
        self.db = db
        self.notifier = notifier or NotificationService()

    async def get_balance(self, account_id: UUID) -> CreditBalance:
        """
        Get the balance row for an account, creating a zero balance on first access.

        Two first accesses can race to create the row; the loser of the
        unique account_id constraint reads the winner's row.

        Args:
            account_id: Account UUID

        Returns:
            CreditBalance
        """
        result = await self.db.execute(select(CreditBalance).where(CreditBalance.account_id == account_id))
        balance = result.scalar_one_or_none()
        if balance:
            return balance

        balance = CreditBalance(
            account_id=account_id,
            balance=Decimal("0"),
            total_purchased=Decimal("0"),
            total_used=Decimal("0"),
            low_credit_threshold=settings.low_credit_threshold_default,
            low_credit_notified=False,
            services_paused=True,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(balance)
        except IntegrityError:
            logger.info("credit_balance_created_concurrently", account_id=str(account_id))
            result = await self.db.execute(
                select(CreditBalance)
                .where(CreditBalance.account_id == account_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one()

        logger.info("credit_balance_created", account_id=str(account_id))
        return balance

    async def _lock_balance(self, account_id: UUID) -> CreditBalance:
        await self.get_balance(account_id)
        result = await self.db.execute(
            select(CreditBalance)
            .where(CreditBalance.account_id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _existing_entry(self, purchase_id: UUID, entry_type: LedgerEntryType) -> Optional[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry).where(
                LedgerEntry.purchase_id == purchase_id,
                LedgerEntry.type == entry_type,
            )
        )
        return result.scalar_one_or_none()

    async def apply(
        self,
        account_id: UUID,
        amount: Decimal,
        entry_type: LedgerEntryType,
        description: str,
        purchase_id: Optional[UUID] = None,
        subscription_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """
        Apply a signed balance change and append its ledger entry.

        A repeated call for the same ``(purchase_id, entry_type)`` returns the
        entry written the first time and leaves the balance untouched.

        Args:
            account_id: Account UUID
            amount: Signed credit amount (negative for usage)
            entry_type: Kind of change
            description: Human readable description
            purchase_id: Purchase that caused the change, if any
            subscription_id: Subscription that caused the change, if any

        Returns:
            The ledger entry

        Raises:
            ValidationError: If the amount is zero or has the wrong sign for its type
            InsufficientFunds: If a usage debit would drive the balance negative
        """
        amount = quantize_credits(amount)
        if amount == 0:
            raise ValidationError("Ledger amount must be non-zero")
        if entry_type == LedgerEntryType.USAGE and amount > 0:
            raise ValidationError("Usage entries must be negative", amount=str(amount))
        if entry_type in CREDITING_TYPES and amount < 0:
            raise ValidationError(f"{entry_type.value} entries must be positive", amount=str(amount))

        balance = await self._lock_balance(account_id)

        # Checked under the lock so two concurrent settlements cannot both pass
        if purchase_id is not None:
            existing = await self._existing_entry(purchase_id, entry_type)
            if existing:
                logger.info(
                    "ledger_entry_duplicate_ignored",
                    account_id=str(account_id),
                    purchase_id=str(purchase_id),
                    type=entry_type.value,
                )
                return existing

        balance_before = balance.balance
        balance_after = balance_before + amount

        if entry_type == LedgerEntryType.USAGE and balance_after < 0 and not balance.allow_negative_balance:
            insufficient_funds_total.inc()
            logger.warning(
                "insufficient_credits",
                account_id=str(account_id),
                balance=str(balance_before),
                requested=str(-amount),
            )
            raise InsufficientFunds(account_id, balance_before, -amount)

        entry = LedgerEntry(
            account_id=account_id,
            type=entry_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            purchase_id=purchase_id,
            subscription_id=subscription_id,
        )
        self.db.add(entry)

        balance.balance = balance_after
        if amount > 0:
            balance.total_purchased = balance.total_purchased + amount
        else:
            balance.total_used = balance.total_used - amount
        balance.services_paused = balance_after <= 0

        notify_low = False
        if balance_after <= balance.low_credit_threshold:
            if not balance.low_credit_notified:
                balance.low_credit_notified = True
                notify_low = True
        elif balance.low_credit_notified:
            balance.low_credit_notified = False

        await self.db.flush()
        ledger_entries_total.labels(type=entry_type.value).inc()

        logger.info(
            "ledger_entry_applied",
            account_id=str(account_id),
            type=entry_type.value,
            amount=str(amount),
            balance_after=str(balance_after),
            purchase_id=str(purchase_id) if purchase_id else None,
        )

        if notify_low:
            await dispatch(self.notifier.low_credits(account_id, balance_after, balance.low_credit_threshold))

        return entry

    async def record_adjustment(self, account_id: UUID, amount: Decimal, description: str) -> LedgerEntry:
        """
        Write a compensating adjustment.

        This is the only way to reverse credits granted by a completed purchase.
        Negative adjustments are not limited by the balance.
        """
        entry = await self.apply(account_id, amount, LedgerEntryType.ADJUSTMENT, description)
        logger.info("ledger_adjustment_recorded", account_id=str(account_id), amount=str(entry.amount))
        return entry

    async def list_ledger(
        self,
        account_id: UUID,
        limit: int = 50,
        offset: int = 0,
        entry_type: Optional[LedgerEntryType] = None,
    ) -> list[LedgerEntry]:
        """
        List ledger entries for an account, newest first.

        Args:
            account_id: Account UUID
            limit: Maximum entries
            offset: Entries to skip
            entry_type: Optional type filter

        Returns:
            List of ledger entries
        """
        query = select(LedgerEntry).where(LedgerEntry.account_id == account_id)
        if entry_type:
            query = query.where(LedgerEntry.type == entry_type)
        query = query.order_by(LedgerEntry.created_at.desc())
        query = query.offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_auto_topup(
        self,
        account_id: UUID,
        enabled: bool,
        amount: Optional[int] = None,
        threshold: Optional[Decimal] = None,
        channel: Optional[PaymentChannel] = None,
        payment_method_ref: Optional[str] = None,
    ) -> CreditBalance:
        """
        Configure automatic top-up for an account.

        Raises:
            ValidationError: If enabling without a positive amount and threshold
        """
        if enabled:
            if not amount or amount <= 0:
                raise ValidationError("Auto-topup amount must be positive")
            if threshold is None or threshold < 0:
                raise ValidationError("Auto-topup threshold must be zero or more")

        balance = await self._lock_balance(account_id)
        balance.auto_topup_enabled = enabled
        if amount is not None:
            balance.auto_topup_amount = amount
        if threshold is not None:
            balance.auto_topup_threshold = quantize_credits(threshold)
        if channel is not None:
            balance.default_payment_channel = channel.value
        if payment_method_ref is not None:
            balance.default_payment_method_ref = payment_method_ref

        await self.db.flush()
        logger.info(
            "auto_topup_updated",
            account_id=str(account_id),
            enabled=enabled,
            amount=balance.auto_topup_amount,
            threshold=str(balance.auto_topup_threshold),
        )
        return balance
