"""Coupon and coupon redemption models."""
import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from credit_engine.models.base import Base, enum_column_type


class DiscountType(enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponCategory(enum.Enum):
    """What a coupon may discount."""

    ALL = "all"
    CREDITS = "credits"
    SUBSCRIPTION = "subscription"


class Coupon(Base):
    """
    Discount rule.

    ``discount_value`` is a percentage (e.g. 10 for 10%) for percentage
    coupons and minor units for fixed coupons.
    """

    __tablename__ = "coupons"

    code = Column(String, nullable=False, unique=True, index=True)  # Stored upper-case
    description = Column(String, nullable=True)
    discount_type = Column(enum_column_type(DiscountType), nullable=False)
    discount_value = Column(Numeric(12, 2), nullable=False)
    max_discount_amount = Column(Integer, nullable=True)  # Cap for percentage coupons, minor units
    min_order_amount = Column(Integer, nullable=False, default=0)
    applicable_to = Column(enum_column_type(CouponCategory), nullable=False, default=CouponCategory.ALL)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    max_uses = Column(Integer, nullable=True)  # Global usage cap, None = unlimited
    times_used = Column(Integer, nullable=False, default=0)
    single_use = Column(Boolean, nullable=False, default=True)  # Once per user
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    redemptions = relationship("CouponRedemption", back_populates="coupon", lazy="raise")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Coupon(code={self.code}, type={self.discount_type.value}, value={self.discount_value})>"


class CouponRedemption(Base):
    """Immutable record that a coupon discounted a settled purchase."""

    __tablename__ = "coupon_redemptions"

    coupon_id = Column(Uuid, ForeignKey("coupons.id"), nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)
    purchase_id = Column(Uuid, ForeignKey("purchases.id"), nullable=True, unique=True)
    subscription_id = Column(Uuid, nullable=True)
    discount_amount = Column(Integer, nullable=False)

    coupon = relationship("Coupon", back_populates="redemptions", lazy="raise")

    def __repr__(self) -> str:
        """String representation."""
        return f"<CouponRedemption(coupon_id={self.coupon_id}, user_id={self.user_id}, discount={self.discount_amount})>"
