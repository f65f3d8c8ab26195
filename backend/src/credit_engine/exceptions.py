"""Error taxonomy for the credit ledger and settlement engine.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with. ``ValidationError`` also subclasses ``ValueError`` so
callers that guard service calls with ``except ValueError`` keep working.
"""
from decimal import Decimal
from typing import Any
from uuid import UUID


class BillingError(Exception):
    """
    Base class for all engine errors.

    ``state_changed`` is set when the raiser already flushed state that must
    survive the error (a failed transition, an audit entry); the session
    owner commits instead of rolling back.
    """

    code = "billing_error"
    status_code = 400
    remediation: str | None = None

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context
        self.state_changed = False


class ValidationError(BillingError, ValueError):
    """Malformed request, rejected before any state change."""

    code = "validation_error"
    status_code = 422


class NotFoundError(BillingError):
    code = "not_found"
    status_code = 404


class InvalidPurchaseState(BillingError):
    """Transition not allowed from the purchase's current status."""

    code = "invalid_purchase_state"
    status_code = 409


class CouponError(BillingError):
    """Coupon rejected at validation time."""

    code = "coupon_invalid"
    status_code = 422
    remediation = "Remove the coupon code or try a different one."


class CouponNotFound(CouponError):
    code = "coupon_not_found"


class CouponExpired(CouponError):
    code = "coupon_expired"


class CouponCategoryMismatch(CouponError):
    code = "coupon_category_mismatch"


class CouponAlreadyRedeemed(CouponError):
    code = "coupon_already_redeemed"


class CouponCapExceeded(CouponError):
    code = "coupon_cap_exceeded"


class CouponMinimumNotMet(CouponError):
    code = "coupon_minimum_not_met"


class ChannelError(BillingError):
    """Gateway unreachable, card declined, or wallet approval rejected."""

    code = "payment_channel_error"
    status_code = 502
    remediation = "Start a new purchase, optionally with a different payment method."


class ChannelTimeout(ChannelError):
    """Gateway did not answer in time; the outcome is unknown."""

    code = "payment_channel_timeout"
    status_code = 504
    remediation = "The payment is still being verified. Check back shortly."


class InsufficientFunds(BillingError):
    """Usage debit would drive the balance below zero."""

    code = "insufficient_credits"
    status_code = 402
    remediation = "Purchase more credits to continue using services."

    def __init__(self, account_id: UUID, balance: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient credits: balance {balance}, requested {requested}",
            account_id=str(account_id),
            balance=str(balance),
            requested=str(requested),
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


class InvoiceGenerationFailure(BillingError):
    """Invoice could not be produced; ledger state is unaffected."""

    code = "invoice_generation_failed"
    status_code = 500


class ConflictingSubscription(BillingError):
    code = "conflicting_subscription"
    status_code = 409
    remediation = "You already have an active subscription. Cancel it before activating another package."
