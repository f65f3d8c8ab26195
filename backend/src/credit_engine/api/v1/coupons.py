"""Coupon endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.api.deps import current_account_id, get_current_user, get_db
from credit_engine.auth.rbac import Role, require_roles
from credit_engine.schemas.coupon import Coupon, CouponCreate, CouponValidateRequest, CouponValidateResponse
from credit_engine.services.coupon_service import CouponService

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    request: CouponValidateRequest,
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> CouponValidateResponse:
    """
    Preview a coupon against an order amount.

    Nothing is reserved or redeemed. Rejections return ``valid=false`` with
    the reason instead of an error status.
    """
    result = await CouponService(db).check(request.code, account_id, request.order_amount, request.category)
    return CouponValidateResponse(
        valid=result.valid,
        code=request.code.strip().upper(),
        discount_amount=result.discount_amount,
        final_amount=request.order_amount - result.discount_amount,
        reason=result.reason,
        error_code=result.code,
    )


@router.post("", response_model=Coupon, status_code=status.HTTP_201_CREATED)
@require_roles(Role.SUPER_ADMIN, Role.BILLING_ADMIN)
async def create_coupon(
    coupon_data: CouponCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> Coupon:
    """Create a coupon (staff only). Codes are stored upper-case and must be unique."""
    coupon = await CouponService(db).create_coupon(coupon_data, current_user=current_user)
    return Coupon.model_validate(coupon)
