"""Purchase, settlement and bank-transfer proof endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from credit_engine.adapters.base import ChannelHandle as AdapterHandle
from credit_engine.api.deps import current_account_id, get_current_user, get_purchase_service
from credit_engine.auth.rbac import Role, require_roles
from credit_engine.models.purchase import PaymentStatus, Purchase as PurchaseModel
from credit_engine.schemas.purchase import (
    ChannelHandle,
    PaymentProof,
    PaymentProofCreate,
    PaymentProofReview,
    Purchase,
    PurchaseCancel,
    PurchaseCreate,
    SettlementConfirmation,
    SettlementStart,
)
from credit_engine.services.purchase_service import PurchaseService

router = APIRouter(prefix="/purchases", tags=["purchases"])
proofs_router = APIRouter(prefix="/payment-proofs", tags=["purchases"])


def handle_response(purchase: PurchaseModel, handle: AdapterHandle) -> ChannelHandle:
    return ChannelHandle(
        purchase_id=purchase.id,
        channel=handle.channel,
        payment_status=purchase.payment_status,
        provider_reference=handle.provider_reference,
        redirect_url=handle.redirect_url,
        client_secret=handle.client_secret,
        instructions=handle.instructions,
    )


@router.post("", response_model=Purchase, status_code=status.HTTP_201_CREATED)
async def create_purchase(
    purchase_data: PurchaseCreate,
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> Purchase:
    """
    Create a pending purchase of credits or a subscription package.

    A coupon code is validated here; it is only consumed when the purchase
    settles.
    """
    purchase = await service.create(
        account_id,
        purchase_data.purchase_type,
        amount=purchase_data.amount,
        package_id=purchase_data.package_id,
        billing_cycle=purchase_data.billing_cycle,
        coupon_code=purchase_data.coupon_code,
        currency=purchase_data.currency,
        billing_address=purchase_data.billing_address,
    )
    return Purchase.model_validate(purchase)


@router.get("", response_model=list[Purchase])
async def list_purchases(
    status_filter: PaymentStatus | None = Query(default=None, alias="status", description="Filter by payment status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> list[Purchase]:
    """List the caller's purchases, newest first."""
    purchases = await service.list_purchases(account_id, status=status_filter, limit=limit, offset=offset)
    return [Purchase.model_validate(p) for p in purchases]


@router.get("/{purchase_id}", response_model=Purchase)
async def get_purchase(
    purchase_id: UUID,
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> Purchase:
    """Get one of the caller's purchases."""
    purchase = await service.get_purchase(purchase_id, user_id=account_id)
    return Purchase.model_validate(purchase)


@router.post("/{purchase_id}/settlement", response_model=ChannelHandle)
async def begin_settlement(
    purchase_id: UUID,
    settlement: SettlementStart,
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> ChannelHandle:
    """
    Start settlement on a payment channel.

    Returns what the client needs next: a redirect URL for hosted checkout and
    PayPal, a client secret for the embedded card form, or bank details for a
    manual transfer.
    """
    handle = await service.begin_settlement(purchase_id, settlement.channel, user_id=account_id)
    purchase = await service.get_purchase(purchase_id)
    return handle_response(purchase, handle)


@router.post("/{purchase_id}/confirm", response_model=Purchase)
async def confirm_purchase(
    purchase_id: UUID,
    confirmation: SettlementConfirmation,
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> Purchase:
    """
    Confirm settlement after the return URL or embedded card form.

    The confirmation is verified with the provider; repeating it after the
    purchase completed returns the completed purchase unchanged. A provider
    that does not answer in time leaves the purchase processing for the
    reconciliation sweep.
    """
    await service.get_purchase(purchase_id, user_id=account_id)
    purchase = await service.on_settled(purchase_id, confirmation.model_dump(exclude_none=True))
    return Purchase.model_validate(purchase)


@router.post("/{purchase_id}/cancel", response_model=Purchase)
async def cancel_purchase(
    purchase_id: UUID,
    cancel: PurchaseCancel | None = None,
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> Purchase:
    """
    Cancel a pending or processing purchase.

    Completed purchases cannot be canceled (409).
    """
    purchase = await service.cancel(purchase_id, user_id=account_id, reason=cancel.reason if cancel else None)
    return Purchase.model_validate(purchase)


@router.post("/{purchase_id}/payment-proofs", response_model=PaymentProof, status_code=status.HTTP_201_CREATED)
async def submit_payment_proof(
    purchase_id: UUID,
    proof_data: PaymentProofCreate,
    account_id: UUID = Depends(current_account_id),
    service: PurchaseService = Depends(get_purchase_service),
) -> PaymentProof:
    """Attach an uploaded bank-transfer proof for staff review."""
    proof = await service.submit_payment_proof(purchase_id, account_id, proof_data)
    return PaymentProof.model_validate(proof)


@proofs_router.post("/{proof_id}/review", response_model=PaymentProof)
@require_roles(Role.SUPER_ADMIN, Role.BILLING_ADMIN)
async def review_payment_proof(
    proof_id: UUID,
    review: PaymentProofReview,
    service: PurchaseService = Depends(get_purchase_service),
    current_user: dict = Depends(get_current_user),
) -> PaymentProof:
    """
    Approve or reject a bank-transfer proof (staff only).

    Approval settles the purchase. Rejection keeps it processing so the user
    can upload a new proof.
    """
    proof = await service.review_payment_proof(
        proof_id,
        reviewer=current_user["sub"],
        approved=review.approved,
        rejection_reason=review.rejection_reason,
    )
    return PaymentProof.model_validate(proof)
