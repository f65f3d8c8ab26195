"""PayPal wallet adapter over the Orders v2 REST API."""
from typing import Any, Optional

import httpx
import structlog

from credit_engine.adapters.base import ChannelHandle, PaymentChannelAdapter, SettlementResult
from credit_engine.config import settings
from credit_engine.exceptions import ChannelError, ChannelTimeout
from credit_engine.models.purchase import PaymentChannel, Purchase
from credit_engine.utils.currency import from_minor_units, to_minor_units

logger = structlog.get_logger(__name__)


class PayPalAdapter(PaymentChannelAdapter):
    """
    Redirect wallet: create an order, send the payer to approve it, capture on return.

    Capturing an order that is already captured is treated as success, so a
    return URL and a reconciliation sweep can race safely.
    """

    channel = PaymentChannel.PAYPAL

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize PayPal adapter.

        Args:
            client_id: REST client id
            client_secret: REST client secret
            api_base: API base URL (sandbox or live)
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.client_id = client_id or settings.paypal_client_id
        self.client_secret = client_secret or settings.paypal_client_secret
        self.api_base = (api_base or settings.paypal_api_base).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.api_base, timeout=self.timeout, transport=self.transport)

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        response.raise_for_status()
        return response.json()["access_token"]

    async def _request(
        self,
        purchase: Purchase,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            async with self._client() as client:
                token = await self._access_token(client)
                request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
                return await client.request(method, path, json=json, headers=request_headers)
        except httpx.TimeoutException as e:
            logger.warning("paypal_timeout", purchase_id=str(purchase.id), path=path)
            raise ChannelTimeout("PayPal did not respond in time", purchase_id=str(purchase.id)) from e
        except httpx.HTTPError as e:
            logger.warning("paypal_request_failed", purchase_id=str(purchase.id), path=path, error=str(e))
            raise ChannelError(f"PayPal request failed: {e}", purchase_id=str(purchase.id)) from e

    async def initiate(self, purchase: Purchase) -> ChannelHandle:
        """
        Create a PayPal order for the purchase total.

        Returns:
            Handle with the payer approval URL
        """
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(purchase.id),
                    "custom_id": str(purchase.id),
                    "amount": {
                        "currency_code": purchase.currency.upper(),
                        "value": str(from_minor_units(purchase.total_amount, purchase.currency)),
                    },
                }
            ],
            "application_context": {
                "return_url": settings.paypal_return_url.replace("{purchase_id}", str(purchase.id)),
                "cancel_url": settings.paypal_cancel_url.replace("{purchase_id}", str(purchase.id)),
                "user_action": "PAY_NOW",
            },
        }
        response = await self._request(
            purchase,
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": f"purchase-{purchase.id}"},
        )
        if response.status_code >= 400:
            raise ChannelError(
                f"PayPal order creation failed ({response.status_code})",
                purchase_id=str(purchase.id),
            )

        order = response.json()
        approval_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approval_url:
            raise ChannelError("PayPal order has no approval link", purchase_id=str(purchase.id))

        logger.info("paypal_order_created", purchase_id=str(purchase.id), order_id=order["id"])
        return ChannelHandle(
            channel=self.channel,
            provider_reference=order["id"],
            redirect_url=approval_url,
            raw={"order_id": order["id"], "status": order.get("status")},
        )

    async def confirm(self, purchase: Purchase, payload: dict[str, Any]) -> SettlementResult:
        """
        Capture the approved order.

        Args:
            purchase: Purchase being confirmed
            payload: May carry ``order_id`` (PayPal's ``token`` query parameter)

        Returns:
            Settlement result
        """
        order_id = payload.get("order_id") or payload.get("token") or purchase.payment_provider_id
        if not order_id:
            return SettlementResult.failed("No PayPal order to capture")
        if purchase.payment_provider_id and order_id != purchase.payment_provider_id:
            logger.warning("paypal_order_mismatch", purchase_id=str(purchase.id), order_id=order_id)
            return SettlementResult.failed("PayPal order belongs to a different purchase", order_id)

        response = await self._request(
            purchase,
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={"PayPal-Request-Id": f"capture-{purchase.id}"},
        )

        if response.status_code == 422 and self._issue(response) == "ORDER_ALREADY_CAPTURED":
            response = await self._request(purchase, "GET", f"/v2/checkout/orders/{order_id}")
        elif response.status_code == 422 and self._issue(response) == "ORDER_NOT_APPROVED":
            return SettlementResult.still_pending(order_id, issue="ORDER_NOT_APPROVED")

        if response.status_code >= 400:
            return SettlementResult.failed(
                f"PayPal capture failed: {self._issue(response) or response.status_code}",
                order_id,
                status_code=response.status_code,
            )
        return self._result_from_order(purchase, order_id, response.json())

    async def query_status(self, purchase: Purchase) -> SettlementResult:
        """
        Look the order up; capture it if the payer approved but never returned.

        Without a recorded order id the order cannot be looked up, so the
        purchase stays pending; the payer can only approve an order whose id
        was returned to us.
        """
        order_id = purchase.payment_provider_id
        if not order_id:
            logger.info("paypal_query_without_order", purchase_id=str(purchase.id))
            return SettlementResult.still_pending(lookup="no_order_id")

        response = await self._request(purchase, "GET", f"/v2/checkout/orders/{order_id}")
        if response.status_code >= 500:
            return SettlementResult.still_pending(order_id, status_code=response.status_code)
        if response.status_code >= 400:
            return SettlementResult.failed(f"PayPal order lookup failed ({response.status_code})", order_id)

        order = response.json()
        if order.get("status") == "APPROVED":
            return await self.confirm(purchase, {"order_id": order_id})
        return self._result_from_order(purchase, order_id, order)

    @staticmethod
    def _issue(response: httpx.Response) -> Optional[str]:
        try:
            details = response.json().get("details") or []
        except ValueError:
            return None
        return details[0].get("issue") if details else None

    def _result_from_order(self, purchase: Purchase, order_id: str, order: dict[str, Any]) -> SettlementResult:
        if not self._belongs_to(purchase, order):
            logger.warning("paypal_order_mismatch", purchase_id=str(purchase.id), order_id=order_id)
            return SettlementResult.failed("PayPal order belongs to a different purchase", order_id)

        status = order.get("status")
        raw = {"order_id": order_id, "status": status}
        if status == "COMPLETED":
            capture = self._first_capture(order)
            amount = None
            currency = purchase.currency
            if capture:
                currency = capture["amount"]["currency_code"]
                amount = to_minor_units(capture["amount"]["value"], currency)
                raw["capture_id"] = capture["id"]
            return SettlementResult(
                success=True,
                provider_reference=order_id,
                amount=amount,
                currency=currency,
                raw=raw,
            )
        if status == "VOIDED":
            return SettlementResult.failed("PayPal order was voided", order_id, **raw)
        return SettlementResult.still_pending(order_id, **raw)

    @staticmethod
    def _belongs_to(purchase: Purchase, order: dict[str, Any]) -> bool:
        """Whether any purchase unit or capture on the order carries this purchase id."""
        expected = str(purchase.id)
        for unit in order.get("purchase_units", []):
            if expected in (unit.get("reference_id"), unit.get("custom_id")):
                return True
            captures = (unit.get("payments") or {}).get("captures") or []
            if any(capture.get("custom_id") == expected for capture in captures):
                return True
        return False

    @staticmethod
    def _first_capture(order: dict[str, Any]) -> Optional[dict[str, Any]]:
        for unit in order.get("purchase_units", []):
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None
