"""Channel registry: maps a payment channel to its adapter."""
from typing import Iterable

from credit_engine.adapters.bank_transfer_adapter import BankTransferAdapter
from credit_engine.adapters.base import PaymentChannelAdapter
from credit_engine.adapters.paypal_adapter import PayPalAdapter
from credit_engine.adapters.stripe_adapter import StripeCardAdapter, StripeCheckoutAdapter
from credit_engine.exceptions import ValidationError
from credit_engine.models.purchase import PaymentChannel


class ChannelRegistry:
    """Adapters keyed by channel, built once per process and passed to services."""

    def __init__(self, adapters: Iterable[PaymentChannelAdapter]):
        self._adapters = {adapter.channel: adapter for adapter in adapters}

    def get(self, channel: PaymentChannel) -> PaymentChannelAdapter:
        """
        Get the adapter for a channel.

        Raises:
            ValidationError: If no adapter is registered for the channel
        """
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise ValidationError(f"Payment channel {channel.value} is not available", channel=channel.value)
        return adapter

    def __contains__(self, channel: PaymentChannel) -> bool:
        return channel in self._adapters

    @classmethod
    def from_settings(cls) -> "ChannelRegistry":
        return cls(
            [
                StripeCheckoutAdapter(),
                StripeCardAdapter(),
                PayPalAdapter(),
                BankTransferAdapter(),
            ]
        )


_registry: ChannelRegistry | None = None


def get_channel_registry() -> ChannelRegistry:
    """FastAPI dependency returning the process-wide registry, built on first use."""
    global _registry
    if _registry is None:
        _registry = ChannelRegistry.from_settings()
    return _registry
