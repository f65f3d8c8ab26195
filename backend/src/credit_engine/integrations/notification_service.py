"""In-app notification integration.

Notifications are fire-and-forget: delivery problems are logged and never
propagate into the billing transaction that triggered them.
"""
from decimal import Decimal
from typing import Any
from uuid import UUID

import httpx
import structlog

from credit_engine.config import settings

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Service for sending user notifications.

    When ``webhook_url`` is configured each notification is POSTed there as
    JSON, otherwise it is only logged.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize notification service.

        Args:
            webhook_url: Endpoint of the notification inbox
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    async def notify(
        self,
        user_id: UUID,
        type: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Create a notification for a user.

        Args:
            user_id: Recipient account
            type: Notification type (low_credits, settlement_completed, ...)
            title: Short title
            message: Human readable message
            metadata: Extra structured data

        Returns:
            True if delivered (or logged), False if delivery failed
        """
        payload = {
            "user_id": str(user_id),
            "type": type,
            "title": title,
            "message": message,
            "metadata": metadata or {},
        }

        if not self.webhook_url:
            logger.info("notification_logged", user_id=str(user_id), type=type, title=title)
            return True

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "notification_delivery_failed",
                user_id=str(user_id),
                type=type,
                error=str(e),
            )
            return False

        logger.info("notification_sent", user_id=str(user_id), type=type)
        return True

    async def low_credits(self, user_id: UUID, current_balance: Decimal, threshold: Decimal) -> bool:
        return await self.notify(
            user_id,
            "low_credits",
            "Low Credit Balance",
            f"Your credit balance is low ({current_balance:.2f} credits). "
            "Please purchase more credits to continue using services.",
            {"current_balance": str(current_balance), "threshold": str(threshold)},
        )

    async def credits_deducted(
        self,
        user_id: UUID,
        credits: Decimal,
        reason: str,
        remaining_balance: Decimal | None = None,
    ) -> bool:
        balance_text = ""
        if remaining_balance is not None:
            balance_text = f" Your remaining balance: {remaining_balance:.2f} credits."
        return await self.notify(
            user_id,
            "credits_deducted",
            "Credits Deducted",
            f"{credits:.2f} credits have been deducted for {reason}.{balance_text}",
            {
                "credits_deducted": str(credits),
                "reason": reason,
                "remaining_balance": str(remaining_balance) if remaining_balance is not None else None,
            },
        )

    async def settlement_completed(self, user_id: UUID, purchase_id: UUID, description: str) -> bool:
        return await self.notify(
            user_id,
            "payment_completed",
            "Payment Successful",
            f"Your payment was received. {description}",
            {"purchase_id": str(purchase_id)},
        )

    async def payment_proof_rejected(self, user_id: UUID, purchase_id: UUID, reason: str | None) -> bool:
        reason_text = f" Reason: {reason}." if reason else ""
        return await self.notify(
            user_id,
            "payment_proof_rejected",
            "Payment Proof Rejected",
            f"Your bank transfer proof could not be verified.{reason_text} Please upload a new proof.",
            {"purchase_id": str(purchase_id), "reason": reason},
        )


async def dispatch(coro) -> None:
    """Await a notification coroutine, logging instead of raising on any error."""
    try:
        await coro
    except Exception as e:
        logger.exception("notification_dispatch_error", exc_info=e)
