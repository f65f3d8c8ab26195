"""Tests for the notification and tax integrations."""
import json
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.integrations.notification_service import NotificationService, dispatch
from credit_engine.integrations.tax_service import TaxService
from credit_engine.models.tax_configuration import TaxConfiguration

INBOX = "https://notify.example.test/inbox"


@pytest.mark.asyncio
async def test_notification_posted_to_inbox() -> None:
    """Test that notifications are delivered as JSON to the configured inbox."""
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(202)

    user_id = uuid4()
    notifier = NotificationService(webhook_url=INBOX, transport=httpx.MockTransport(handler))

    delivered = await notifier.low_credits(user_id, Decimal("4.5"), Decimal("10"))

    assert delivered is True
    assert received[0]["user_id"] == str(user_id)
    assert received[0]["type"] == "low_credits"
    assert "4.50 credits" in received[0]["message"]
    assert received[0]["metadata"] == {"current_balance": "4.5", "threshold": "10"}


@pytest.mark.asyncio
async def test_notification_failure_is_reported_not_raised() -> None:
    """Test that an unavailable inbox returns False."""
    notifier = NotificationService(
        webhook_url=INBOX, transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )

    assert await notifier.settlement_completed(uuid4(), uuid4(), "50 credits added") is False


@pytest.mark.asyncio
async def test_notification_without_inbox_is_logged() -> None:
    """Test that an unconfigured inbox only logs."""
    notifier = NotificationService(webhook_url="")

    assert await notifier.payment_proof_rejected(uuid4(), uuid4(), "Amount does not match") is True


@pytest.mark.asyncio
async def test_dispatch_swallows_notification_errors() -> None:
    """Test that a broken notifier never reaches the caller."""

    async def broken() -> bool:
        raise RuntimeError("template missing")

    await dispatch(broken())


@pytest.mark.asyncio
async def test_tax_rate_resolution(db_session: AsyncSession) -> None:
    """Test jurisdiction, default and unconfigured tax lookups."""
    service = TaxService(db_session)

    assert await service.get_tax_rate("US") == Decimal("0")

    db_session.add_all(
        [
            TaxConfiguration(jurisdiction=None, tax_rate=Decimal("0.05"), is_default=True, is_active=True),
            TaxConfiguration(jurisdiction="FR", tax_rate=Decimal("0.20"), is_default=False, is_active=True),
            TaxConfiguration(jurisdiction="IT", tax_rate=Decimal("0.22"), is_default=False, is_active=False),
        ]
    )
    await db_session.flush()

    assert await service.get_tax_rate("fr") == Decimal("0.20")
    assert await service.get_tax_rate("IT") == Decimal("0.05")
    assert await service.get_tax_rate(None) == Decimal("0.05")
