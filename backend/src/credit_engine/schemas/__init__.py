"""Pydantic schemas for API request/response validation."""

from credit_engine.schemas.coupon import (
    Coupon,
    CouponCreate,
    CouponValidateRequest,
    CouponValidateResponse,
)
from credit_engine.schemas.credit import (
    AdjustmentCreate,
    AutoTopupUpdate,
    CreditBalance,
    LedgerEntry,
    LedgerList,
    UsageCreate,
    UsageResult,
)
from credit_engine.schemas.error import ErrorDetail, ErrorResponse
from credit_engine.schemas.invoice import Invoice, InvoiceLineItem, InvoiceList
from credit_engine.schemas.purchase import (
    ChannelHandle,
    PaymentProof,
    PaymentProofCreate,
    PaymentProofReview,
    Purchase,
    PurchaseCancel,
    PurchaseCreate,
    SettlementConfirmation,
    SettlementStart,
)
from credit_engine.schemas.subscription import (
    Package,
    Subscription,
    SubscriptionCheckout,
    SubscriptionCheckoutResult,
)

__all__ = [
    # Credit schemas
    "CreditBalance",
    "LedgerEntry",
    "LedgerList",
    "UsageCreate",
    "UsageResult",
    "AutoTopupUpdate",
    "AdjustmentCreate",
    # Purchase schemas
    "Purchase",
    "PurchaseCreate",
    "PurchaseCancel",
    "SettlementStart",
    "SettlementConfirmation",
    "ChannelHandle",
    "PaymentProof",
    "PaymentProofCreate",
    "PaymentProofReview",
    # Coupon schemas
    "Coupon",
    "CouponCreate",
    "CouponValidateRequest",
    "CouponValidateResponse",
    # Invoice schemas
    "Invoice",
    "InvoiceLineItem",
    "InvoiceList",
    # Subscription schemas
    "Package",
    "Subscription",
    "SubscriptionCheckout",
    "SubscriptionCheckoutResult",
    # Error schemas
    "ErrorDetail",
    "ErrorResponse",
]
