"""Purchase and payment proof models."""
import enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid

from credit_engine.models.base import Base, enum_column_type


class PurchaseType(enum.Enum):
    """What the purchase buys."""

    CREDITS = "credits"
    SUBSCRIPTION = "subscription"


class PaymentStatus(enum.Enum):
    """Purchase lifecycle: pending -> processing -> completed | failed | canceled."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELED)


class PaymentChannel(enum.Enum):
    """Settlement channel a purchase is paid through."""

    STRIPE_CHECKOUT = "stripe_checkout"
    STRIPE_CARD = "stripe_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    NONE = "none"  # Zero-amount settlement, e.g. free tier


class PurchaseSource(enum.Enum):
    CHECKOUT = "checkout"
    AUTO_TOPUP = "auto_topup"
    FREE_TIER = "free_tier"


class Purchase(Base):
    """
    One checkout attempt.

    Created pending by the purchase orchestrator, mutated only by its state
    transitions and never deleted. Monetary fields are minor units.
    """

    __tablename__ = "purchases"

    user_id = Column(Uuid, nullable=False, index=True)
    purchase_type = Column(enum_column_type(PurchaseType), nullable=False)
    source = Column(enum_column_type(PurchaseSource), nullable=False, default=PurchaseSource.CHECKOUT)
    amount = Column(Integer, nullable=False)
    credits_amount = Column(Numeric(14, 2), nullable=False, default=0)
    credits_rate = Column(Numeric(10, 4), nullable=True)  # Currency units per credit
    subtotal = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    tax_rate = Column(Numeric(6, 4), nullable=True)  # Set at settlement
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    coupon_id = Column(Uuid, ForeignKey("coupons.id"), nullable=True)
    coupon_code = Column(String, nullable=True)
    package_id = Column(Uuid, ForeignKey("packages.id"), nullable=True)
    billing_cycle = Column(String(16), nullable=True)
    payment_method = Column(enum_column_type(PaymentChannel), nullable=True)
    payment_status = Column(enum_column_type(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_provider_id = Column(String, nullable=True, index=True)
    payment_provider_response = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Purchase(id={self.id}, type={self.purchase_type.value}, status={self.payment_status.value}, total={self.total_amount})>"


class ProofStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentProof(Base):
    """
    Uploaded bank-transfer proof awaiting staff review.

    The file itself lives in the blob store; only its URL is kept here. A
    rejected proof leaves the purchase processing so a new proof can be sent.
    """

    __tablename__ = "payment_proofs"

    purchase_id = Column(Uuid, ForeignKey("purchases.id"), nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)
    file_url = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    file_size = Column(Integer, nullable=True)
    file_type = Column(String, nullable=True)
    transaction_reference = Column(String, nullable=False)
    status = Column(enum_column_type(ProofStatus), nullable=False, default=ProofStatus.PENDING, index=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentProof(id={self.id}, purchase_id={self.purchase_id}, status={self.status.value})>"
