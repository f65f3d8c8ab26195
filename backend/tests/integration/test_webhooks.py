"""Integration tests for the Stripe webhook endpoint."""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.config import settings
from credit_engine.models.purchase import PaymentChannel, Purchase, PurchaseType
from credit_engine.services.purchase_service import PurchaseService
from tests.conftest import auth_headers


def _signed(event: dict, secret: str | None = None) -> tuple[bytes, dict[str, str]]:
    """Serialize ``event`` and sign it the way Stripe does."""
    payload = json.dumps(event).encode()
    timestamp = int(time.time())
    signature = hmac.new(
        (secret or settings.stripe_webhook_secret).encode(),
        f"{timestamp}.{payload.decode()}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return payload, {"stripe-signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _event(event_type: str, data: dict) -> dict:
    return {"id": f"evt_{uuid4().hex[:16]}", "object": "event", "type": event_type, "data": {"object": data}}


async def _open_checkout(db: AsyncSession, channels, user_id: UUID) -> Purchase:
    service = PurchaseService(db, channels=channels)
    purchase = await service.create(user_id, PurchaseType.CREDITS, amount=1000)
    await service.begin_settlement(purchase.id, PaymentChannel.STRIPE_CHECKOUT)
    await db.commit()
    return purchase


async def _post(client: AsyncClient, event: dict, secret: str | None = None):
    payload, headers = _signed(event, secret)
    return await client.post("/webhooks/stripe", content=payload, headers=headers)


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(async_client: AsyncClient) -> None:
    """Test that unsigned deliveries are refused."""
    response = await async_client.post("/webhooks/stripe", content=b"{}")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(async_client: AsyncClient) -> None:
    """Test that deliveries signed with another secret are refused."""
    response = await _post(async_client, _event("checkout.session.completed", {"id": "cs_1"}), secret="whsec_other")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_checkout_completed_settles_purchase(
    async_client: AsyncClient, db_session: AsyncSession, account_id: UUID, channels
) -> None:
    """Test that a completed checkout session settles the purchase once."""
    purchase = await _open_checkout(db_session, channels, account_id)
    event = _event(
        "checkout.session.completed",
        {"id": purchase.payment_provider_id, "client_reference_id": str(purchase.id), "payment_status": "paid"},
    )

    first = await _post(async_client, event)
    redelivered = await _post(async_client, event)

    assert first.json() == {"status": "success", "event_type": "checkout.session.completed"}
    assert redelivered.json()["status"] == "success"
    headers = auth_headers(account_id)
    stored = (await async_client.get(f"/v1/purchases/{purchase.id}", headers=headers)).json()
    assert stored["payment_status"] == "completed"
    balance = (await async_client.get("/v1/credits/balance", headers=headers)).json()
    assert Decimal(balance["balance"]) == Decimal("50")


@pytest.mark.asyncio
async def test_payment_intent_resolved_by_provider_reference(
    async_client: AsyncClient, db_session: AsyncSession, account_id: UUID, channels
) -> None:
    """Test that events without metadata are matched on the provider reference."""
    purchase = await _open_checkout(db_session, channels, account_id)

    response = await _post(async_client, _event("payment_intent.succeeded", {"id": purchase.payment_provider_id}))

    assert response.json()["status"] == "success"
    stored = (await async_client.get(f"/v1/purchases/{purchase.id}", headers=auth_headers(account_id))).json()
    assert stored["payment_status"] == "completed"


@pytest.mark.asyncio
async def test_payment_failed_fails_purchase(
    async_client: AsyncClient, db_session: AsyncSession, account_id: UUID, channels
) -> None:
    """Test that a failed payment intent fails the purchase with Stripe's reason."""
    purchase = await _open_checkout(db_session, channels, account_id)
    event = _event(
        "payment_intent.payment_failed",
        {
            "id": "pi_failed",
            "metadata": {"purchase_id": str(purchase.id)},
            "last_payment_error": {"message": "Your card has insufficient funds."},
        },
    )

    response = await _post(async_client, event)

    assert response.json()["status"] == "success"
    stored = (await async_client.get(f"/v1/purchases/{purchase.id}", headers=auth_headers(account_id))).json()
    assert stored["payment_status"] == "failed"
    assert stored["failure_reason"] == "Your card has insufficient funds."


@pytest.mark.asyncio
async def test_checkout_card_attempt_does_not_fail_purchase(
    async_client: AsyncClient, db_session: AsyncSession, account_id: UUID, channels
) -> None:
    """Test that a declined card inside hosted checkout leaves the purchase open for a retry."""
    purchase = await _open_checkout(db_session, channels, account_id)
    event = _event(
        "payment_intent.payment_failed",
        {
            "id": "pi_checkout_attempt",
            "metadata": {"purchase_id": str(purchase.id), "channel": "stripe_checkout"},
            "last_payment_error": {"message": "Your card was declined."},
        },
    )

    response = await _post(async_client, event)

    assert response.json() == {"status": "ignored", "event_type": "payment_intent.payment_failed"}
    stored = (await async_client.get(f"/v1/purchases/{purchase.id}", headers=auth_headers(account_id))).json()
    assert stored["payment_status"] == "processing"


@pytest.mark.asyncio
async def test_event_for_canceled_purchase_is_not_applied(
    async_client: AsyncClient, db_session: AsyncSession, account_id: UUID, channels
) -> None:
    """Test that a late settlement event is acknowledged without granting credits."""
    purchase = await _open_checkout(db_session, channels, account_id)
    headers = auth_headers(account_id)
    await async_client.post(f"/v1/purchases/{purchase.id}/cancel", headers=headers)

    response = await _post(
        async_client,
        _event("checkout.session.completed", {"id": "cs_late", "client_reference_id": str(purchase.id)}),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "not_applied"
    balance = (await async_client.get("/v1/credits/balance", headers=headers)).json()
    assert Decimal(balance["balance"]) == Decimal("0")


@pytest.mark.asyncio
async def test_unhandled_and_unmatched_events_are_ignored(async_client: AsyncClient) -> None:
    """Test that unrelated events and unknown objects are acknowledged and ignored."""
    unhandled = await _post(async_client, _event("customer.created", {"id": "cus_1"}))
    unmatched = await _post(async_client, _event("payment_intent.succeeded", {"id": "pi_unknown"}))

    assert unhandled.json() == {"status": "ignored", "event_type": "customer.created"}
    assert unmatched.json() == {"status": "ignored", "event_type": "payment_intent.succeeded"}
