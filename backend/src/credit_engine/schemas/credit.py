"""Pydantic schemas for credit balances and the ledger."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from credit_engine.models.ledger_entry import LedgerEntryType
from credit_engine.models.purchase import PaymentChannel


class CreditBalance(BaseModel):
    """Schema for returning an account's credit balance."""

    account_id: UUID
    balance: Decimal
    total_purchased: Decimal
    total_used: Decimal
    low_credit_threshold: Decimal
    low_credit_notified: bool
    auto_topup_enabled: bool
    auto_topup_amount: int | None = Field(default=None, description="Top-up charge in cents")
    auto_topup_threshold: Decimal | None
    default_payment_channel: str | None
    services_paused: bool
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    """Schema for returning a ledger entry."""

    id: UUID
    account_id: UUID
    type: LedgerEntryType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    purchase_id: UUID | None
    subscription_id: UUID | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerList(BaseModel):
    """Schema for a page of ledger entries."""

    items: list[LedgerEntry]
    limit: int
    offset: int


class UsageCreate(BaseModel):
    """Schema for debiting credits for metered consumption."""

    credits: Decimal = Field(..., gt=0, decimal_places=2, description="Credits to debit")
    description: str = Field(..., min_length=1, max_length=500, description="What the credits were used for")


class UsageResult(BaseModel):
    """Schema for the outcome of a usage debit."""

    entry: LedgerEntry
    balance: Decimal
    services_paused: bool
    auto_topup_purchase_id: UUID | None = None


class AutoTopupUpdate(BaseModel):
    """Schema for configuring automatic top-up."""

    enabled: bool
    amount: int | None = Field(default=None, gt=0, description="Top-up charge in cents")
    threshold: Decimal | None = Field(default=None, ge=0, description="Top up when balance falls below this")
    payment_channel: PaymentChannel | None = Field(default=None, description="Channel charged for top-ups")
    payment_method_ref: str | None = Field(default=None, description="Saved gateway payment method id")

    @field_validator("payment_channel")
    @classmethod
    def channel_supports_auto_topup(cls, value: PaymentChannel | None) -> PaymentChannel | None:
        if value is not None and value != PaymentChannel.STRIPE_CARD:
            raise ValueError(f"{value.value} cannot be charged off-session for automatic top-up")
        return value


class AdjustmentCreate(BaseModel):
    """Schema for a staff compensating adjustment."""

    account_id: UUID
    amount: Decimal = Field(..., decimal_places=2, description="Signed credit amount")
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator("amount")
    @classmethod
    def amount_not_zero(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("Adjustment amount must be non-zero")
        return value
