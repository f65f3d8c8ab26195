"""Invoice model for settled purchases and subscription periods."""
import enum

from sqlalchemy import JSON, Column, Date, DateTime, Integer, Numeric, String, Uuid, event, inspect

from credit_engine.models.base import Base, enum_column_type


class InvoiceStatus(enum.Enum):
    """Invoice lifecycle status."""

    PAID = "paid"
    SENT = "sent"
    OVERDUE = "overdue"


FROZEN_WHEN_PAID = (
    "subtotal",
    "discount_amount",
    "discount_code",
    "tax_rate",
    "tax_amount",
    "total_amount",
    "currency",
    "items",
)


class Invoice(Base):
    """
    Billing invoice.

    Immutable after PAID status. Corrections are issued as a new
    compensating invoice, never as an edit.
    """

    __tablename__ = "invoices"

    invoice_number = Column(String, nullable=False, unique=True, index=True)  # INV-000001, INV-000002, ...
    user_id = Column(Uuid, nullable=False, index=True)
    purchase_id = Column(Uuid, nullable=True, unique=True)
    subscription_id = Column(Uuid, nullable=True, index=True)
    invoice_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    subtotal = Column(Integer, nullable=False)  # Minor units
    discount_amount = Column(Integer, nullable=False, default=0)
    discount_code = Column(String, nullable=True)
    tax_rate = Column(Numeric(6, 4), nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    status = Column(enum_column_type(InvoiceStatus), nullable=False, default=InvoiceStatus.PAID, index=True)
    paid_at = Column(DateTime, nullable=True)
    items = Column(JSON, nullable=False, default=list)  # [{description, quantity, unit_price, total}]
    billing_address = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status.value}, total={self.total_amount})>"


@event.listens_for(Invoice, "before_update")
def _reject_paid_invoice_edits(mapper, connection, target: Invoice) -> None:
    state = inspect(target)
    status_history = state.attrs.status.history
    was_paid = (status_history.deleted and status_history.deleted[0] == InvoiceStatus.PAID) or (
        not status_history.has_changes() and target.status == InvoiceStatus.PAID
    )
    if not was_paid:
        return
    changed = [name for name in FROZEN_WHEN_PAID if state.attrs[name].history.has_changes()]
    if changed:
        raise ValueError(f"Invoice {target.invoice_number} is paid; fields {changed} are frozen")


class InvoiceSequence(Base):
    """Per-tenant invoice counter, row-locked while numbering."""

    __tablename__ = "invoice_sequences"

    tenant_id = Column(String, nullable=False, unique=True)
    last_number = Column(Integer, nullable=False, default=0)
