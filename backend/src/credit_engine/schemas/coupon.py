"""Pydantic schemas for coupons."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from credit_engine.models.coupon import CouponCategory, DiscountType


class CouponCreate(BaseModel):
    """Schema for creating a coupon."""

    code: str = Field(..., min_length=3, max_length=50, description="Coupon code, stored upper-case")
    description: str | None = Field(default=None, max_length=500)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0, description="Percent for percentage coupons, cents for fixed")
    max_discount_amount: int | None = Field(default=None, gt=0, description="Cap for percentage coupons, cents")
    min_order_amount: int = Field(default=0, ge=0, description="Minimum order in cents")
    applicable_to: CouponCategory = CouponCategory.ALL
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_uses: int | None = Field(default=None, gt=0, description="Global usage cap")
    single_use: bool = Field(default=True, description="Each user may redeem once")

    @model_validator(mode="after")
    def check_rules(self) -> "CouponCreate":
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class Coupon(BaseModel):
    """Schema for returning coupon data."""

    id: UUID
    code: str
    description: str | None
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: int | None
    min_order_amount: int
    applicable_to: CouponCategory
    valid_from: datetime | None
    valid_until: datetime | None
    max_uses: int | None
    times_used: int
    single_use: bool
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CouponValidateRequest(BaseModel):
    """Schema for previewing a coupon against an order."""

    code: str = Field(..., min_length=1, max_length=50)
    order_amount: int = Field(..., gt=0, description="Order amount in cents")
    category: CouponCategory = CouponCategory.CREDITS


class CouponValidateResponse(BaseModel):
    """Schema for a coupon preview result."""

    valid: bool
    code: str
    discount_amount: int = 0
    final_amount: int
    reason: str | None = None
    error_code: str | None = None
