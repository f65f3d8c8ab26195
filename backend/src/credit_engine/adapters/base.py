"""Payment channel adapter interface."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from credit_engine.models.purchase import PaymentChannel, Purchase


@dataclass
class ChannelHandle:
    """
    What the caller needs to continue a settlement.

    ``redirect_url`` for hosted checkout and wallets, ``client_secret`` for the
    embedded card form, ``instructions`` for bank transfers.
    """

    channel: PaymentChannel
    provider_reference: Optional[str] = None
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    instructions: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class SettlementResult:
    """
    Outcome reported by a channel.

    ``pending`` means the provider has not decided yet; the purchase stays
    processing. ``amount`` is what the provider says it collected, in minor
    units, when it says so.
    """

    success: bool
    provider_reference: Optional[str] = None
    pending: bool = False
    amount: Optional[int] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, reason: str, provider_reference: Optional[str] = None, **raw: Any) -> "SettlementResult":
        return cls(success=False, provider_reference=provider_reference, failure_reason=reason, raw=raw)

    @classmethod
    def still_pending(cls, provider_reference: Optional[str] = None, **raw: Any) -> "SettlementResult":
        return cls(success=False, pending=True, provider_reference=provider_reference, raw=raw)


class PaymentChannelAdapter(ABC):
    """
    One settlement channel.

    Adapters only talk to the provider. They never touch the ledger or the
    purchase row; the orchestrator does that with what they report.
    """

    channel: PaymentChannel

    @abstractmethod
    async def initiate(self, purchase: Purchase) -> ChannelHandle:
        """
        Start settlement for a purchase.

        Raises:
            ChannelError: If the provider refuses or is unreachable
            ChannelTimeout: If the provider does not answer in time
        """

    @abstractmethod
    async def confirm(self, purchase: Purchase, payload: dict[str, Any]) -> SettlementResult:
        """
        Verify a provider confirmation (return URL, webhook or proof approval).

        Raises:
            ChannelTimeout: If the provider does not answer in time
        """

    async def query_status(self, purchase: Purchase) -> SettlementResult:
        """
        Ask the provider for the current outcome of a processing purchase.

        A purchase without a provider reference stays pending: only an answer
        from the provider may fail it.
        """
        if not purchase.payment_provider_id:
            return SettlementResult.still_pending(lookup="no_provider_reference")
        return await self.confirm(purchase, {})
