"""Coupon engine: validation, discount computation and redemption recording."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.exceptions import (
    CouponAlreadyRedeemed,
    CouponCapExceeded,
    CouponCategoryMismatch,
    CouponError,
    CouponExpired,
    CouponMinimumNotMet,
    CouponNotFound,
    ValidationError,
)
from credit_engine.metrics import coupon_redemptions_total
from credit_engine.models.base import to_naive_utc, utcnow
from credit_engine.models.coupon import Coupon, CouponCategory, CouponRedemption, DiscountType
from credit_engine.schemas.coupon import CouponCreate
from credit_engine.utils.audit import audit_create
from credit_engine.utils.currency import floor_minor

logger = structlog.get_logger(__name__)


@dataclass
class CouponValidation:
    valid: bool
    discount_amount: int = 0
    coupon: Optional[Coupon] = None
    reason: Optional[str] = None
    code: Optional[str] = None


def compute_discount(coupon: Coupon, order_amount: int) -> int:
    """
    Discount in minor units for an order.

    Percentages round down to the minor unit and respect
    ``max_discount_amount``. The discount never exceeds the order.

    Example:
        10% capped at 5000 on a 100000 order gives 5000.
    """
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = floor_minor(Decimal(order_amount) * Decimal(coupon.discount_value) / Decimal(100))
        if coupon.max_discount_amount is not None:
            discount = min(discount, coupon.max_discount_amount)
    else:
        discount = floor_minor(Decimal(coupon.discount_value))
    return max(0, min(discount, order_amount))


class CouponService:
    """
    Service for coupon validation and redemption.

    ``validate`` is read-only. Redemptions are written only by
    ``record_redemption``, which the purchase orchestrator calls inside the
    settlement transaction.
    """

    def __init__(self, db: AsyncSession):
        """Initialize coupon service with database session."""
        self.db = db

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.db.execute(select(Coupon).where(Coupon.code == code.strip().upper()))
        return result.scalar_one_or_none()

    async def _user_redemption_exists(self, coupon_id: UUID, user_id: UUID) -> bool:
        result = await self.db.execute(
            select(CouponRedemption.id)
            .where(CouponRedemption.coupon_id == coupon_id, CouponRedemption.user_id == user_id)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def validate(
        self,
        code: str,
        user_id: UUID,
        order_amount: int,
        category: CouponCategory,
    ) -> CouponValidation:
        """
        Validate a coupon code for an order and compute its discount.

        Args:
            code: Coupon code (case-insensitive)
            user_id: User applying the coupon
            order_amount: Order amount in minor units
            category: What is being bought (credits or subscription)

        Returns:
            Successful validation with the discount

        Raises:
            ValidationError: If the order amount is not positive
            CouponNotFound: If the code does not exist or is inactive
            CouponExpired: If outside the validity window
            CouponCategoryMismatch: If the coupon does not apply to the category
            CouponMinimumNotMet: If the order is below the coupon minimum
            CouponAlreadyRedeemed: If a single-use coupon was already redeemed by the user
            CouponCapExceeded: If the global usage cap is reached
        """
        if order_amount <= 0:
            raise ValidationError("Order amount must be positive", order_amount=order_amount)

        coupon = await self.get_by_code(code)
        if coupon is None or not coupon.is_active:
            raise CouponNotFound(f"Coupon {code.strip().upper()} not found", code=code)

        now = utcnow()
        if (coupon.valid_from and now < coupon.valid_from) or (coupon.valid_until and now > coupon.valid_until):
            raise CouponExpired(f"Coupon {coupon.code} is not valid at this time", code=coupon.code)

        if coupon.applicable_to not in (CouponCategory.ALL, category):
            raise CouponCategoryMismatch(
                f"Coupon {coupon.code} only applies to {coupon.applicable_to.value}",
                code=coupon.code,
                category=category.value,
            )

        if order_amount < (coupon.min_order_amount or 0):
            raise CouponMinimumNotMet(
                f"Coupon {coupon.code} requires a minimum order of {coupon.min_order_amount}",
                code=coupon.code,
            )

        if coupon.single_use and await self._user_redemption_exists(coupon.id, user_id):
            raise CouponAlreadyRedeemed(f"Coupon {coupon.code} has already been used", code=coupon.code)

        if coupon.max_uses is not None and coupon.times_used >= coupon.max_uses:
            raise CouponCapExceeded(f"Coupon {coupon.code} has reached its usage limit", code=coupon.code)

        discount = compute_discount(coupon, order_amount)
        logger.info(
            "coupon_validated",
            code=coupon.code,
            user_id=str(user_id),
            order_amount=order_amount,
            discount_amount=discount,
        )
        return CouponValidation(valid=True, discount_amount=discount, coupon=coupon)

    async def check(
        self,
        code: str,
        user_id: UUID,
        order_amount: int,
        category: CouponCategory,
    ) -> CouponValidation:
        """Non-raising ``validate`` for previews: rejections come back as ``valid=False``."""
        try:
            return await self.validate(code, user_id, order_amount, category)
        except CouponError as e:
            return CouponValidation(valid=False, reason=e.message, code=e.code)

    async def record_redemption(
        self,
        coupon_id: UUID,
        user_id: UUID,
        purchase_id: UUID,
        discount_amount: int,
        subscription_id: Optional[UUID] = None,
    ) -> CouponRedemption:
        """
        Record that a coupon discounted a completed purchase.

        Locks the coupon row and re-checks the usage cap and per-user rule, so
        two purchases validated concurrently cannot both redeem the last use.

        Raises:
            CouponCapExceeded: If the cap was reached since validation
            CouponAlreadyRedeemed: If the user redeemed this single-use coupon meanwhile
        """
        existing = await self.db.execute(
            select(CouponRedemption).where(CouponRedemption.purchase_id == purchase_id)
        )
        redemption = existing.scalar_one_or_none()
        if redemption:
            return redemption

        result = await self.db.execute(
            select(Coupon)
            .where(Coupon.id == coupon_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        coupon = result.scalar_one()

        if coupon.max_uses is not None and coupon.times_used >= coupon.max_uses:
            raise CouponCapExceeded(f"Coupon {coupon.code} has reached its usage limit", code=coupon.code)
        if coupon.single_use and await self._user_redemption_exists(coupon.id, user_id):
            raise CouponAlreadyRedeemed(f"Coupon {coupon.code} has already been used", code=coupon.code)

        redemption = CouponRedemption(
            coupon_id=coupon.id,
            user_id=user_id,
            purchase_id=purchase_id,
            subscription_id=subscription_id,
            discount_amount=discount_amount,
        )
        self.db.add(redemption)
        coupon.times_used += 1
        await self.db.flush()

        coupon_redemptions_total.labels(discount_type=coupon.discount_type.value).inc()
        logger.info(
            "coupon_redeemed",
            code=coupon.code,
            user_id=str(user_id),
            purchase_id=str(purchase_id),
            discount_amount=discount_amount,
            times_used=coupon.times_used,
        )
        return redemption

    @audit_create("coupon")
    async def create_coupon(self, data: CouponCreate, current_user: Optional[dict] = None) -> Coupon:
        """
        Create a coupon.

        Raises:
            ValidationError: If the code is already taken
        """
        code = data.code.strip().upper()
        if await self.get_by_code(code):
            raise ValidationError(f"Coupon code {code} already exists", code=code)

        coupon = Coupon(
            code=code,
            description=data.description,
            discount_type=data.discount_type,
            discount_value=data.discount_value,
            max_discount_amount=data.max_discount_amount,
            min_order_amount=data.min_order_amount,
            applicable_to=data.applicable_to,
            valid_from=to_naive_utc(data.valid_from),
            valid_until=to_naive_utc(data.valid_until),
            max_uses=data.max_uses,
            single_use=data.single_use,
            is_active=True,
            times_used=0,
        )
        self.db.add(coupon)
        await self.db.flush()

        logger.info("coupon_created", code=code, discount_type=data.discount_type.value)
        return coupon
