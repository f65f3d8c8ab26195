"""Ledger entry model: append-only balance changes."""
import enum

from sqlalchemy import Column, Numeric, String, UniqueConstraint, Uuid

from credit_engine.models.base import Base, enum_column_type


class LedgerEntryType(enum.Enum):
    """Kind of balance change."""

    PURCHASE = "purchase"
    USAGE = "usage"
    ADJUSTMENT = "adjustment"
    SUBSCRIPTION_CREDIT = "subscription_credit"


class LedgerEntry(Base):
    """
    One immutable, signed balance change.

    ``balance_after == balance_before + amount``. At most one entry per
    ``(purchase_id, type)``, which is what makes repeated settlement safe.
    """

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("purchase_id", "type", name="uq_ledger_entries_purchase_type"),
    )

    account_id = Column(Uuid, nullable=False, index=True)
    type = Column(enum_column_type(LedgerEntryType), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    balance_before = Column(Numeric(14, 2), nullable=False)
    balance_after = Column(Numeric(14, 2), nullable=False)
    description = Column(String, nullable=False)
    purchase_id = Column(Uuid, nullable=True, index=True)
    subscription_id = Column(Uuid, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<LedgerEntry(id={self.id}, type={self.type.value}, amount={self.amount}, balance_after={self.balance_after})>"
