"""Stripe webhook handler for settlement events."""
import json
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.adapters.registry import ChannelRegistry, get_channel_registry
from credit_engine.adapters.stripe_adapter import construct_webhook_event
from credit_engine.database import get_db
from credit_engine.exceptions import BillingError
from credit_engine.models.purchase import PaymentChannel, Purchase
from credit_engine.services.purchase_service import PurchaseService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["webhooks"])

SETTLED_EVENTS = ("checkout.session.completed", "payment_intent.succeeded")
FAILED_EVENTS = ("payment_intent.payment_failed", "checkout.session.expired")


async def _find_purchase_id(db: AsyncSession, data: dict[str, Any]) -> Optional[UUID]:
    """Resolve the purchase from metadata, falling back to the provider reference."""
    metadata = data.get("metadata") or {}
    reference = metadata.get("purchase_id") or data.get("client_reference_id")
    if reference:
        try:
            return UUID(reference)
        except ValueError:
            logger.warning("stripe_webhook_bad_purchase_reference", reference=reference)

    result = await db.execute(select(Purchase.id).where(Purchase.payment_provider_id == data.get("id")))
    return result.scalar_one_or_none()


def _confirmation_payload(event_type: str, data: dict[str, Any]) -> dict[str, str]:
    if event_type.startswith("checkout.session"):
        return {"session_id": data["id"]}
    return {"payment_intent_id": data["id"]}


def _failure_reason(event_type: str, data: dict[str, Any]) -> str:
    if event_type == "checkout.session.expired":
        return "Checkout session expired"
    last_error = data.get("last_payment_error") or {}
    return last_error.get("message") or "Payment failed"


@router.post("")
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    channels: ChannelRegistry = Depends(get_channel_registry),
) -> dict[str, str]:
    """
    Handle incoming Stripe webhook events.

    Verifies the signature and routes settlement events to the purchase
    orchestrator:
    - checkout.session.completed, payment_intent.succeeded: settle
    - payment_intent.payment_failed, checkout.session.expired: fail

    Engine errors (duplicates, late events, purchases in another state) are
    logged and acknowledged with 200 so Stripe does not retry them.

    Raises:
        HTTPException: 400 if the signature is missing or invalid
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.error("stripe_webhook_missing_signature")
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        construct_webhook_event(body, signature)
    except ValueError as e:
        logger.error("stripe_webhook_verification_failed", error=str(e))
        raise HTTPException(status_code=400, detail="Webhook verification failed")

    # Verified above; read the raw JSON so handlers see plain dicts
    event = json.loads(body)
    event_type = event["type"]
    data = event["data"]["object"]

    logger.info("stripe_webhook_received", event_type=event_type, event_id=event.get("id"), object_id=data.get("id"))

    if event_type not in SETTLED_EVENTS + FAILED_EVENTS:
        logger.info("stripe_webhook_unhandled_event", event_type=event_type)
        return {"status": "ignored", "event_type": event_type}

    # Hosted checkout reports through checkout.session events; its card attempts can be retried
    metadata = data.get("metadata") or {}
    if event_type.startswith("payment_intent") and metadata.get("channel") == PaymentChannel.STRIPE_CHECKOUT.value:
        logger.info("stripe_webhook_checkout_intent_skipped", event_type=event_type, object_id=data.get("id"))
        return {"status": "ignored", "event_type": event_type}

    purchase_id = await _find_purchase_id(db, data)
    if purchase_id is None:
        logger.warning("stripe_webhook_purchase_not_found", event_type=event_type, object_id=data.get("id"))
        return {"status": "ignored", "event_type": event_type}

    service = PurchaseService(db, channels=channels)
    try:
        if event_type in SETTLED_EVENTS:
            await service.on_settled(purchase_id, _confirmation_payload(event_type, data))
        else:
            await service.on_failed(purchase_id, _failure_reason(event_type, data))
    except BillingError as e:
        logger.warning(
            "stripe_webhook_not_applied",
            event_type=event_type,
            purchase_id=str(purchase_id),
            error=e.code,
            message=e.message,
        )
        return {"status": "not_applied", "event_type": event_type}

    return {"status": "success", "event_type": event_type}
