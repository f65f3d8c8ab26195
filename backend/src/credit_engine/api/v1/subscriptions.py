"""Subscription endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.api.deps import current_account_id, get_db, get_purchase_service
from credit_engine.api.v1.purchases import handle_response
from credit_engine.exceptions import NotFoundError
from credit_engine.models.purchase import PurchaseType
from credit_engine.schemas.purchase import Purchase
from credit_engine.schemas.subscription import Subscription, SubscriptionCheckout, SubscriptionCheckoutResult
from credit_engine.services.purchase_service import PurchaseService
from credit_engine.services.subscription_service import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("", response_model=SubscriptionCheckoutResult, status_code=status.HTTP_201_CREATED)
async def checkout_subscription(
    checkout: SubscriptionCheckout,
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> SubscriptionCheckoutResult:
    """
    Buy a paid package.

    Creates a subscription purchase and starts settlement on the chosen
    channel. The subscription activates when the purchase settles. Returns
    409 if the caller already has an active subscription.
    """
    purchase = await service.create(
        account_id,
        PurchaseType.SUBSCRIPTION,
        package_id=checkout.package_id,
        billing_cycle=checkout.billing_cycle,
        coupon_code=checkout.coupon_code,
    )
    handle = await service.begin_settlement(purchase.id, checkout.channel, user_id=account_id)
    return SubscriptionCheckoutResult(
        purchase=Purchase.model_validate(purchase),
        handle=handle_response(purchase, handle),
    )


@router.post("/free", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def assign_free_package(
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> Subscription:
    """Activate the free package and grant its credits."""
    subscription = await SubscriptionService(db).assign_free_package(account_id)
    return Subscription.model_validate(subscription)


@router.get("/current", response_model=Subscription)
async def get_current_subscription(
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> Subscription:
    """Get the caller's active subscription."""
    subscription = await SubscriptionService(db).get_active_subscription(account_id)
    if subscription is None:
        raise NotFoundError("No active subscription")
    return Subscription.model_validate(subscription)


@router.post("/current/cancel", response_model=Subscription)
async def cancel_subscription(
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> Subscription:
    """Cancel the caller's active subscription. Granted credits stay on the balance."""
    subscription = await SubscriptionService(db).cancel(account_id)
    return Subscription.model_validate(subscription)
