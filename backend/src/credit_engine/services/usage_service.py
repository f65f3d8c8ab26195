"""Service for metered credit consumption."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.adapters.registry import ChannelRegistry
from credit_engine.integrations.notification_service import NotificationService, dispatch
from credit_engine.models.credit_balance import CreditBalance
from credit_engine.models.ledger_entry import LedgerEntry, LedgerEntryType
from credit_engine.models.purchase import Purchase
from credit_engine.services.auto_topup_service import AutoTopupService
from credit_engine.services.ledger_service import LedgerService
from credit_engine.utils.currency import quantize_credits

logger = structlog.get_logger(__name__)


@dataclass
class UsageOutcome:
    entry: LedgerEntry
    balance: CreditBalance
    topup: Optional[Purchase] = None


class UsageService:
    """Service for debiting credits for consumption."""

    def __init__(
        self,
        db: AsyncSession,
        channels: ChannelRegistry | None = None,
        notifier: NotificationService | None = None,
    ):
        """Initialize usage service with database session."""
        self.db = db
        self.notifier = notifier or NotificationService()
        self.ledger = LedgerService(db, notifier=self.notifier)
        self.auto_topup = AutoTopupService(db, channels=channels, notifier=self.notifier)

    async def check_available(self, account_id: UUID, credits: Decimal) -> bool:
        """
        Check whether an account can pay for an action before starting it.

        Advisory only: ``apply_usage`` re-checks under the balance lock.
        """
        balance = await self.ledger.get_balance(account_id)
        return balance.allow_negative_balance or balance.balance >= quantize_credits(credits)

    async def debit(self, account_id: UUID, credits: Decimal, description: str) -> UsageOutcome:
        """
        Debit credits and run the auto-topup check on the resulting balance.

        Args:
            account_id: Account UUID
            credits: Positive number of credits consumed
            description: What the credits were used for

        Returns:
            The usage entry, the balance after it and any triggered top-up

        Raises:
            ValidationError: If credits is not positive
            InsufficientFunds: If the balance cannot cover the debit
        """
        entry = await self.ledger.apply(account_id, -Decimal(credits), LedgerEntryType.USAGE, description)
        balance = await self.ledger.get_balance(account_id)

        await dispatch(self.notifier.credits_deducted(account_id, -entry.amount, description, entry.balance_after))
        topup = await self.auto_topup.evaluate(balance)
        return UsageOutcome(entry=entry, balance=balance, topup=topup)

    async def apply_usage(self, account_id: UUID, credits: Decimal, description: str) -> LedgerEntry:
        """Debit credits for consumption. See ``debit``."""
        outcome = await self.debit(account_id, credits, description)
        return outcome.entry
