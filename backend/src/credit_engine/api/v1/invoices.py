"""Invoice API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.api.deps import current_account_id, get_db
from credit_engine.models.invoice import InvoiceStatus
from credit_engine.schemas.invoice import Invoice, InvoiceList
from credit_engine.services.invoice_service import InvoiceService

router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.get("", response_model=InvoiceList)
async def list_invoices(
    status: InvoiceStatus | None = Query(default=None, description="Filter by status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> InvoiceList:
    """
    List the caller's invoices, newest first.

    - **status**: paid, sent or overdue
    """
    invoices = await InvoiceService(db).list_invoices(account_id, status=status, limit=limit, offset=offset)
    return InvoiceList(items=invoices, limit=limit, offset=offset)


@router.get("/{invoice_id}", response_model=Invoice)
async def get_invoice(
    invoice_id: UUID,
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> Invoice:
    """
    Get one of the caller's invoices.

    Paid invoices are immutable; corrections are issued as new invoices.
    """
    invoice = await InvoiceService(db).get_invoice(invoice_id, user_id=account_id)
    return Invoice.model_validate(invoice)
