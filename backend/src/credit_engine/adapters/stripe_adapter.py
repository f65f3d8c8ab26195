"""Stripe payment channel adapters."""
from typing import Any, NoReturn, Optional

import stripe
import structlog

from credit_engine.adapters.base import ChannelHandle, PaymentChannelAdapter, SettlementResult
from credit_engine.config import settings
from credit_engine.exceptions import ChannelError, ChannelTimeout
from credit_engine.models.purchase import PaymentChannel, Purchase, PurchaseType

logger = structlog.get_logger(__name__)


def _purchase_metadata(purchase: Purchase, channel: PaymentChannel) -> dict[str, str]:
    return {
        "purchase_id": str(purchase.id),
        "user_id": str(purchase.user_id),
        "channel": channel.value,
        "type": "credit_purchase" if purchase.purchase_type == PurchaseType.CREDITS else "subscription_purchase",
    }


def _belongs_to(stripe_object: Any, purchase: Purchase) -> bool:
    metadata = getattr(stripe_object, "metadata", None) or {}
    return metadata.get("purchase_id") == str(purchase.id)


def _describe(purchase: Purchase) -> str:
    if purchase.purchase_type == PurchaseType.CREDITS:
        return f"{purchase.credits_amount:.0f} credits"
    return f"Subscription ({purchase.billing_cycle})"


def _raise_channel_error(e: stripe.StripeError, purchase: Purchase, operation: str) -> NoReturn:
    logger.warning(
        "stripe_request_failed",
        purchase_id=str(purchase.id),
        operation=operation,
        error=str(e),
    )
    if isinstance(e, stripe.APIConnectionError):
        raise ChannelTimeout(f"Stripe did not respond during {operation}", purchase_id=str(purchase.id)) from e
    message = getattr(e, "user_message", None) or str(e)
    raise ChannelError(message, purchase_id=str(purchase.id)) from e


def _find_payment_intent(purchase: Purchase) -> Optional[Any]:
    """Find the purchase's PaymentIntent by metadata when no reference was recorded."""
    try:
        found = stripe.PaymentIntent.search(query=f"metadata['purchase_id']:'{purchase.id}'", limit=1)
    except stripe.StripeError as e:
        _raise_channel_error(e, purchase, "payment_intent_search")
    return found.data[0] if found.data else None


def _result_from_intent(purchase: Purchase, payment_intent: Any) -> SettlementResult:
    if not _belongs_to(payment_intent, purchase):
        logger.warning(
            "stripe_payment_intent_mismatch",
            purchase_id=str(purchase.id),
            payment_intent_id=payment_intent.id,
        )
        return SettlementResult.failed("Payment intent belongs to a different purchase", payment_intent.id)

    raw = {"payment_intent_id": payment_intent.id, "status": payment_intent.status}
    if payment_intent.status == "succeeded":
        return SettlementResult(
            success=True,
            provider_reference=payment_intent.id,
            amount=payment_intent.amount_received,
            currency=payment_intent.currency.upper(),
            raw=raw,
        )
    if payment_intent.status in StripeCardAdapter.FAILED_STATUSES:
        return SettlementResult.failed("Payment was canceled", payment_intent.id, **raw)
    last_error = payment_intent.last_payment_error
    if payment_intent.status == "requires_payment_method" and last_error:
        return SettlementResult.failed(last_error.message or "Card was declined", payment_intent.id, **raw)
    return SettlementResult.still_pending(payment_intent.id, **raw)


def _lookup_without_reference(purchase: Purchase) -> SettlementResult:
    """Outcome of a purchase whose initiate call never returned a reference."""
    payment_intent = _find_payment_intent(purchase)
    if payment_intent is None:
        logger.info("stripe_payment_intent_not_found", purchase_id=str(purchase.id))
        return SettlementResult.still_pending(lookup="payment_intent_search")
    return _result_from_intent(purchase, payment_intent)


class StripeCheckoutAdapter(PaymentChannelAdapter):
    """Hosted Stripe Checkout: the payer is redirected to a Stripe page."""

    channel = PaymentChannel.STRIPE_CHECKOUT

    def __init__(self, success_url: str | None = None, cancel_url: str | None = None):
        """Initialize Stripe adapter with API key."""
        stripe.api_key = settings.stripe_secret_key
        self.success_url = success_url or settings.checkout_success_url
        self.cancel_url = cancel_url or settings.checkout_cancel_url

    async def initiate(self, purchase: Purchase) -> ChannelHandle:
        """
        Create a Checkout Session for the purchase total.

        The purchase metadata is copied onto the session's PaymentIntent so
        the payment can be found even if the session id is never recorded.

        Args:
            purchase: Purchase in processing

        Returns:
            Handle with the hosted checkout URL
        """
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": purchase.currency.lower(),
                            "unit_amount": purchase.total_amount,
                            "product_data": {"name": _describe(purchase)},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=self.success_url.replace("{purchase_id}", str(purchase.id)),
                cancel_url=self.cancel_url.replace("{purchase_id}", str(purchase.id)),
                client_reference_id=str(purchase.id),
                metadata=_purchase_metadata(purchase, self.channel),
                payment_intent_data={"metadata": _purchase_metadata(purchase, self.channel)},
                idempotency_key=f"purchase_{purchase.id}_checkout",
            )
        except stripe.StripeError as e:
            _raise_channel_error(e, purchase, "checkout_session_create")

        logger.info("stripe_checkout_session_created", purchase_id=str(purchase.id), session_id=session.id)
        return ChannelHandle(
            channel=self.channel,
            provider_reference=session.id,
            redirect_url=session.url,
            raw={"session_id": session.id},
        )

    async def confirm(self, purchase: Purchase, payload: dict[str, Any]) -> SettlementResult:
        """
        Verify a Checkout Session by retrieving it from Stripe.

        Args:
            purchase: Purchase being confirmed
            payload: May carry ``session_id`` from the return URL or webhook

        Returns:
            Settlement result
        """
        session_id = payload.get("session_id") or purchase.payment_provider_id
        if not session_id:
            return SettlementResult.failed("No checkout session to verify")

        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            _raise_channel_error(e, purchase, "checkout_session_retrieve")

        if session.client_reference_id != str(purchase.id):
            logger.warning("stripe_checkout_session_mismatch", purchase_id=str(purchase.id), session_id=session_id)
            return SettlementResult.failed("Checkout session belongs to a different purchase", session_id)

        raw = {"session_id": session.id, "status": session.status, "payment_status": session.payment_status}
        if session.payment_status in ("paid", "no_payment_required"):
            return SettlementResult(
                success=True,
                provider_reference=session.id,
                amount=session.amount_total,
                currency=(session.currency or purchase.currency).upper(),
                raw=raw,
            )
        if session.status == "expired":
            return SettlementResult.failed("Checkout session expired", session.id, **raw)
        return SettlementResult.still_pending(session.id, **raw)

    async def query_status(self, purchase: Purchase) -> SettlementResult:
        """Re-check the session, or search for the payment when no session id was recorded."""
        if purchase.payment_provider_id:
            return await self.confirm(purchase, {})
        return _lookup_without_reference(purchase)


class StripeCardAdapter(PaymentChannelAdapter):
    """Embedded card form backed by a PaymentIntent."""

    channel = PaymentChannel.STRIPE_CARD

    FAILED_STATUSES = ("canceled",)

    def __init__(self):
        """Initialize Stripe adapter with API key."""
        stripe.api_key = settings.stripe_secret_key

    async def initiate(self, purchase: Purchase) -> ChannelHandle:
        """
        Create a PaymentIntent the embedded form confirms client-side.

        Returns:
            Handle with the client secret
        """
        try:
            payment_intent = stripe.PaymentIntent.create(
                amount=purchase.total_amount,
                currency=purchase.currency.lower(),
                payment_method_types=["card"],
                metadata=_purchase_metadata(purchase, self.channel),
                idempotency_key=f"purchase_{purchase.id}_intent",
            )
        except stripe.StripeError as e:
            _raise_channel_error(e, purchase, "payment_intent_create")

        logger.info("stripe_payment_intent_created", purchase_id=str(purchase.id), payment_intent_id=payment_intent.id)
        return ChannelHandle(
            channel=self.channel,
            provider_reference=payment_intent.id,
            client_secret=payment_intent.client_secret,
            instructions={"publishable_key": settings.stripe_publishable_key},
            raw={"payment_intent_id": payment_intent.id, "status": payment_intent.status},
        )

    async def charge_saved_method(self, purchase: Purchase, payment_method_ref: str) -> ChannelHandle:
        """
        Charge a saved card off-session, used by auto-topup.

        Args:
            purchase: Auto-topup purchase in processing
            payment_method_ref: Saved Stripe payment method id

        Returns:
            Handle referencing the created PaymentIntent

        Raises:
            ChannelError: If the card is declined
        """
        try:
            payment_intent = stripe.PaymentIntent.create(
                amount=purchase.total_amount,
                currency=purchase.currency.lower(),
                payment_method=payment_method_ref,
                off_session=True,
                confirm=True,
                metadata=_purchase_metadata(purchase, self.channel),
                idempotency_key=f"purchase_{purchase.id}_offsession",
            )
        except stripe.StripeError as e:
            _raise_channel_error(e, purchase, "payment_intent_offsession")

        logger.info(
            "stripe_offsession_charge_created",
            purchase_id=str(purchase.id),
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return ChannelHandle(
            channel=self.channel,
            provider_reference=payment_intent.id,
            raw={"payment_intent_id": payment_intent.id, "status": payment_intent.status},
        )

    async def confirm(self, purchase: Purchase, payload: dict[str, Any]) -> SettlementResult:
        """
        Verify a PaymentIntent by retrieving it from Stripe.

        Args:
            purchase: Purchase being confirmed
            payload: May carry ``payment_intent_id``

        Returns:
            Settlement result
        """
        payment_intent_id = payload.get("payment_intent_id") or purchase.payment_provider_id
        if not payment_intent_id:
            return SettlementResult.failed("No payment intent to verify")
        if purchase.payment_provider_id and payment_intent_id != purchase.payment_provider_id:
            logger.warning(
                "stripe_payment_intent_mismatch",
                purchase_id=str(purchase.id),
                payment_intent_id=payment_intent_id,
            )
            return SettlementResult.failed("Payment intent belongs to a different purchase", payment_intent_id)

        try:
            payment_intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            _raise_channel_error(e, purchase, "payment_intent_retrieve")

        return _result_from_intent(purchase, payment_intent)

    async def query_status(self, purchase: Purchase) -> SettlementResult:
        """Re-check the PaymentIntent, or search for it by metadata when no id was recorded."""
        if purchase.payment_provider_id:
            return await self.confirm(purchase, {})
        return _lookup_without_reference(purchase)


def construct_webhook_event(payload: bytes, signature: str) -> Any:
    """
    Construct and verify webhook event.

    Args:
        payload: Webhook payload
        signature: Webhook signature

    Returns:
        Stripe event object

    Raises:
        ValueError: If signature verification fails
    """
    try:
        return stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    except ValueError as e:
        raise ValueError(f"Invalid payload: {e}") from e
    except stripe.SignatureVerificationError as e:
        raise ValueError(f"Invalid signature: {e}") from e
