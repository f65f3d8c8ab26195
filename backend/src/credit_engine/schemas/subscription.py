"""Pydantic schemas for packages and subscriptions."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from credit_engine.models.purchase import PaymentChannel
from credit_engine.models.subscription import BillingCycle, PackageTier, SubscriptionStatus
from credit_engine.schemas.purchase import ChannelHandle, Purchase


class Package(BaseModel):
    """Schema for returning package data."""

    id: UUID
    name: str
    tier: PackageTier
    monthly_price: int
    yearly_price: int | None
    currency: str
    credits_included: Decimal

    model_config = ConfigDict(from_attributes=True)


class SubscriptionCheckout(BaseModel):
    """Schema for buying a paid package."""

    package_id: UUID
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    channel: PaymentChannel = PaymentChannel.STRIPE_CHECKOUT
    coupon_code: str | None = Field(default=None, max_length=50)


class SubscriptionCheckoutResult(BaseModel):
    """Schema for a started subscription checkout."""

    purchase: Purchase
    handle: ChannelHandle


class Subscription(BaseModel):
    """Schema for returning subscription data."""

    id: UUID
    user_id: UUID
    package_id: UUID
    purchase_id: UUID | None
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: datetime
    current_period_end: datetime
    auto_renew: bool
    canceled_at: datetime | None
    package: Package | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
