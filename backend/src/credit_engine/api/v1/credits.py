"""Credit balance, ledger and usage endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.api.deps import current_account_id, get_current_user, get_db, get_usage_service
from credit_engine.auth.rbac import Role, require_roles
from credit_engine.models.ledger_entry import LedgerEntryType
from credit_engine.schemas.credit import (
    AdjustmentCreate,
    AutoTopupUpdate,
    CreditBalance,
    LedgerEntry,
    LedgerList,
    UsageCreate,
    UsageResult,
)
from credit_engine.services.ledger_service import LedgerService
from credit_engine.services.usage_service import UsageService

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalance)
async def get_balance(
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> CreditBalance:
    """
    Get the caller's credit balance.

    A zero balance is created on first access.
    """
    balance = await LedgerService(db).get_balance(account_id)
    return CreditBalance.model_validate(balance)


@router.get("/ledger", response_model=LedgerList)
async def list_ledger(
    entry_type: LedgerEntryType | None = Query(default=None, alias="type", description="Filter by entry type"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> LedgerList:
    """
    List the caller's ledger entries, newest first.

    - **type**: purchase, usage, subscription_credit or adjustment
    """
    entries = await LedgerService(db).list_ledger(account_id, limit=limit, offset=offset, entry_type=entry_type)
    return LedgerList(items=entries, limit=limit, offset=offset)


@router.post("/usage", response_model=UsageResult, status_code=status.HTTP_201_CREATED)
async def apply_usage(
    usage: UsageCreate,
    account_id: UUID = Depends(current_account_id),
    service: UsageService = Depends(get_usage_service),
) -> UsageResult:
    """
    Debit credits for metered consumption.

    Returns 402 when the balance cannot cover the debit. A debit that drops
    the balance below the auto-topup threshold starts a top-up purchase.
    """
    outcome = await service.debit(account_id, usage.credits, usage.description)
    return UsageResult(
        entry=LedgerEntry.model_validate(outcome.entry),
        balance=outcome.balance.balance,
        services_paused=outcome.balance.services_paused,
        auto_topup_purchase_id=outcome.topup.id if outcome.topup else None,
    )


@router.put("/auto-topup", response_model=CreditBalance)
async def update_auto_topup(
    settings_update: AutoTopupUpdate,
    account_id: UUID = Depends(current_account_id),
    db: AsyncSession = Depends(get_db),
) -> CreditBalance:
    """Configure automatic top-up with a saved card."""
    balance = await LedgerService(db).update_auto_topup(
        account_id,
        enabled=settings_update.enabled,
        amount=settings_update.amount,
        threshold=settings_update.threshold,
        channel=settings_update.payment_channel,
        payment_method_ref=settings_update.payment_method_ref,
    )
    return CreditBalance.model_validate(balance)


@router.post("/adjustments", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED)
@require_roles(Role.SUPER_ADMIN, Role.BILLING_ADMIN)
async def create_adjustment(
    adjustment: AdjustmentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(get_current_user),
) -> LedgerEntry:
    """
    Write a compensating ledger adjustment (staff only).

    This is how credits granted by a completed purchase are reversed, for
    example after a refund.
    """
    entry = await LedgerService(db).record_adjustment(
        adjustment.account_id,
        adjustment.amount,
        f"{adjustment.description} (by {current_user['sub']})",
    )
    return LedgerEntry.model_validate(entry)
