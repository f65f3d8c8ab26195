"""Manual bank transfer adapter."""
from typing import Any

import structlog

from credit_engine.adapters.base import ChannelHandle, PaymentChannelAdapter, SettlementResult
from credit_engine.config import settings
from credit_engine.models.purchase import PaymentChannel, Purchase
from credit_engine.utils.currency import format_amount_for_currency

logger = structlog.get_logger(__name__)


class BankTransferAdapter(PaymentChannelAdapter):
    """
    Bank transfer settled by staff review of an uploaded proof.

    There is no provider to ask. ``confirm`` only accepts a payload produced
    by an approved proof review; anything else keeps the purchase waiting.
    """

    channel = PaymentChannel.BANK_TRANSFER

    async def initiate(self, purchase: Purchase) -> ChannelHandle:
        instructions = {
            "account_name": settings.bank_account_name,
            "bank_name": settings.bank_name,
            "account_number": settings.bank_account_number,
            "iban": settings.bank_iban,
            "swift": settings.bank_swift,
            "reference": str(purchase.id),
            "amount": format_amount_for_currency(purchase.total_amount, purchase.currency),
            "instructions": settings.bank_instructions,
        }
        logger.info("bank_transfer_instructions_issued", purchase_id=str(purchase.id))
        return ChannelHandle(channel=self.channel, provider_reference=None, instructions=instructions)

    async def confirm(self, purchase: Purchase, payload: dict[str, Any]) -> SettlementResult:
        proof_id = payload.get("proof_id")
        if not payload.get("approved") or not proof_id:
            return SettlementResult.still_pending(None, reason="awaiting_proof_review")

        return SettlementResult(
            success=True,
            provider_reference=payload.get("transaction_reference") or str(proof_id),
            amount=purchase.total_amount,
            currency=purchase.currency,
            raw={"proof_id": str(proof_id), "reviewed_by": payload.get("reviewed_by")},
        )

    async def query_status(self, purchase: Purchase) -> SettlementResult:
        return SettlementResult.still_pending(None, reason="awaiting_proof_review")
