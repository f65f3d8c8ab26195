"""Pydantic schemas for Invoice model."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from credit_engine.models.invoice import InvoiceStatus


class InvoiceLineItem(BaseModel):
    """Schema for invoice line item."""

    description: str = Field(..., description="Line item description")
    quantity: int = Field(default=1, ge=1, description="Quantity")
    unit_price: int = Field(..., description="Unit price in cents")
    total: int = Field(..., description="Line total in cents")


class Invoice(BaseModel):
    """Schema for returning invoice data."""

    id: UUID
    invoice_number: str
    user_id: UUID
    purchase_id: UUID | None
    subscription_id: UUID | None
    invoice_date: date
    due_date: date
    currency: str
    subtotal: int
    discount_amount: int
    discount_code: str | None
    tax_rate: Decimal
    tax_amount: int
    total_amount: int
    status: InvoiceStatus
    paid_at: datetime | None
    items: list[InvoiceLineItem]
    billing_address: dict[str, Any] | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceList(BaseModel):
    """Schema for a page of invoices."""

    items: list[Invoice]
    limit: int
    offset: int
