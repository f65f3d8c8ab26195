"""Pydantic schemas for purchases, settlement and payment proofs."""
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from credit_engine.models.purchase import (
    PaymentChannel,
    PaymentStatus,
    ProofStatus,
    PurchaseSource,
    PurchaseType,
)
from credit_engine.models.subscription import BillingCycle


class PurchaseCreate(BaseModel):
    """Schema for creating a purchase."""

    purchase_type: PurchaseType = PurchaseType.CREDITS
    amount: int | None = Field(default=None, gt=0, description="Credit purchase amount in cents")
    package_id: UUID | None = Field(default=None, description="Package for subscription purchases")
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    coupon_code: str | None = Field(default=None, max_length=50)
    currency: str = Field(default="USD", min_length=3, max_length=3, description="ISO 4217 currency code")
    billing_address: dict[str, Any] | None = None

    @model_validator(mode="after")
    def check_target(self) -> "PurchaseCreate":
        if self.purchase_type == PurchaseType.CREDITS and self.amount is None:
            raise ValueError("amount is required for credit purchases")
        if self.purchase_type == PurchaseType.SUBSCRIPTION and self.package_id is None:
            raise ValueError("package_id is required for subscription purchases")
        return self


class Purchase(BaseModel):
    """Schema for returning purchase data."""

    id: UUID
    user_id: UUID
    purchase_type: PurchaseType
    source: PurchaseSource
    amount: int
    credits_amount: Decimal
    credits_rate: Decimal | None
    subtotal: int
    discount_amount: int
    tax_rate: Decimal | None
    tax_amount: int
    total_amount: int
    currency: str
    coupon_code: str | None
    package_id: UUID | None
    billing_cycle: str | None
    payment_method: PaymentChannel | None
    payment_status: PaymentStatus
    payment_provider_id: str | None
    failure_reason: str | None
    processing_started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    canceled_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SettlementStart(BaseModel):
    """Schema for starting settlement on a channel."""

    channel: PaymentChannel

    @field_validator("channel")
    @classmethod
    def channel_is_payable(cls, value: PaymentChannel) -> PaymentChannel:
        if value == PaymentChannel.NONE:
            raise ValueError("A payment channel is required")
        return value


class ChannelHandle(BaseModel):
    """Schema for what the client needs to continue settlement."""

    purchase_id: UUID
    channel: PaymentChannel
    payment_status: PaymentStatus
    provider_reference: str | None = None
    redirect_url: str | None = None
    client_secret: str | None = None
    instructions: dict[str, Any] = Field(default_factory=dict)


class SettlementConfirmation(BaseModel):
    """Schema for a return-URL or embedded-form confirmation."""

    session_id: str | None = Field(default=None, description="Stripe Checkout session id")
    payment_intent_id: str | None = Field(default=None, description="Stripe PaymentIntent id")
    order_id: str | None = Field(default=None, description="PayPal order id")
    token: str | None = Field(default=None, description="PayPal return token (order id)")


class PurchaseCancel(BaseModel):
    """Schema for canceling a purchase."""

    reason: str | None = Field(default=None, max_length=500)


class PaymentProofCreate(BaseModel):
    """Schema for submitting a bank-transfer proof already uploaded to the blob store."""

    file_url: str = Field(..., min_length=1, max_length=2048)
    file_name: str | None = Field(default=None, max_length=255)
    file_size: int | None = Field(default=None, ge=0)
    file_type: str | None = Field(default=None, max_length=100)
    transaction_reference: str = Field(..., min_length=1, max_length=255)


class PaymentProof(BaseModel):
    """Schema for returning a payment proof."""

    id: UUID
    purchase_id: UUID
    user_id: UUID
    file_url: str
    file_name: str | None
    file_size: int | None
    file_type: str | None
    transaction_reference: str
    status: ProofStatus
    reviewed_by: str | None
    reviewed_at: datetime | None
    rejection_reason: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentProofReview(BaseModel):
    """Schema for a staff review decision."""

    approved: bool
    rejection_reason: str | None = Field(default=None, max_length=500)
