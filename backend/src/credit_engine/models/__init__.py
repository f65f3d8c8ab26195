"""SQLAlchemy ORM models for the credit ledger and settlement engine."""
# Import all models here to ensure they are registered with Alembic

from credit_engine.models.base import Base
from credit_engine.models.credit_balance import CreditBalance
from credit_engine.models.ledger_entry import LedgerEntry, LedgerEntryType
from credit_engine.models.coupon import Coupon, CouponCategory, CouponRedemption, DiscountType
from credit_engine.models.subscription import BillingCycle, Package, PackageTier, Subscription, SubscriptionStatus
from credit_engine.models.purchase import (
    PaymentChannel,
    PaymentProof,
    PaymentStatus,
    ProofStatus,
    Purchase,
    PurchaseSource,
    PurchaseType,
)
from credit_engine.models.invoice import Invoice, InvoiceSequence, InvoiceStatus
from credit_engine.models.tax_configuration import TaxConfiguration
from credit_engine.models.audit_log import AuditLog

__all__ = [
    "Base",
    "CreditBalance",
    "LedgerEntry",
    "LedgerEntryType",
    "Coupon",
    "CouponCategory",
    "CouponRedemption",
    "DiscountType",
    "BillingCycle",
    "Package",
    "PackageTier",
    "Subscription",
    "SubscriptionStatus",
    "PaymentChannel",
    "PaymentProof",
    "PaymentStatus",
    "ProofStatus",
    "Purchase",
    "PurchaseSource",
    "PurchaseType",
    "Invoice",
    "InvoiceSequence",
    "InvoiceStatus",
    "TaxConfiguration",
    "AuditLog",
]
