"""Credit balance model, one row per account."""
from decimal import Decimal

from sqlalchemy import Boolean, Column, Integer, Numeric, String, Uuid

from credit_engine.models.base import Base


class CreditBalance(Base):
    """
    Prepaid credit balance for an account.

    Mutated only by the ledger service. ``balance`` always equals
    ``total_purchased - total_used`` and ``services_paused`` mirrors
    ``balance <= 0``.
    """

    __tablename__ = "credit_balances"

    account_id = Column(Uuid, nullable=False, unique=True, index=True)
    balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total_purchased = Column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total_used = Column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    low_credit_threshold = Column(Numeric(14, 2), nullable=False, default=Decimal("10"))
    low_credit_notified = Column(Boolean, nullable=False, default=False)
    auto_topup_enabled = Column(Boolean, nullable=False, default=False)
    auto_topup_amount = Column(Integer, nullable=True)  # Minor units charged per topup
    auto_topup_threshold = Column(Numeric(14, 2), nullable=True)  # Credits
    default_payment_channel = Column(String(32), nullable=True)
    default_payment_method_ref = Column(String, nullable=True)  # Saved gateway payment method
    services_paused = Column(Boolean, nullable=False, default=True)
    allow_negative_balance = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<CreditBalance(account_id={self.account_id}, balance={self.balance}, paused={self.services_paused})>"
