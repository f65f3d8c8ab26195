"""Integration tests for credit balances and the append-only ledger."""
from decimal import Decimal
from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.exceptions import InsufficientFunds, ValidationError
from credit_engine.models.ledger_entry import LedgerEntry, LedgerEntryType
from credit_engine.services.ledger_service import LedgerService
from credit_engine.services.usage_service import UsageService


async def _entry_count(db: AsyncSession, account_id: UUID) -> int:
    result = await db.execute(select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account_id))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_new_account_starts_empty_and_paused(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that the first balance access creates a zero, paused balance."""
    balance = await LedgerService(db_session).get_balance(account_id)

    assert balance.balance == Decimal("0")
    assert balance.total_purchased == Decimal("0")
    assert balance.total_used == Decimal("0")
    assert balance.services_paused is True
    assert balance.low_credit_notified is False


@pytest.mark.asyncio
async def test_balance_created_meanwhile_is_reused(
    db_session: AsyncSession, session_factory, account_id: UUID, monkeypatch
) -> None:
    """Test that losing the race to create a balance row reads the row that won."""
    async with session_factory() as other:
        await LedgerService(other).apply(account_id, Decimal("20"), LedgerEntryType.PURCHASE, "Credit purchase")
        await other.commit()

    execute = db_session.execute
    lookups = []

    async def miss_first_lookup(statement, *args, **kwargs):
        result = await execute(statement, *args, **kwargs)
        if not lookups:
            lookups.append(statement)
            return SimpleNamespace(scalar_one_or_none=lambda: None)
        return result

    monkeypatch.setattr(db_session, "execute", miss_first_lookup)
    ledger = LedgerService(db_session)

    balance = await ledger.get_balance(account_id)

    assert lookups
    assert balance.balance == Decimal("20")
    entry = await ledger.apply(account_id, Decimal("-5"), LedgerEntryType.USAGE, "Call - 2 min")
    assert entry.balance_after == Decimal("15")


@pytest.mark.asyncio
async def test_entries_chain_balances(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that every entry records balance_after = balance_before + amount."""
    ledger = LedgerService(db_session)

    first = await ledger.apply(account_id, Decimal("50"), LedgerEntryType.PURCHASE, "Credit purchase")
    second = await ledger.apply(account_id, Decimal("-12.5"), LedgerEntryType.USAGE, "Call - 5 min")
    third = await ledger.apply(account_id, Decimal("-3"), LedgerEntryType.USAGE, "Call - 1 min")
    await db_session.commit()

    assert (first.balance_before, first.balance_after) == (Decimal("0"), Decimal("50"))
    assert second.balance_before == first.balance_after
    assert second.balance_after == Decimal("37.50")
    assert third.balance_after == Decimal("34.50")

    balance = await ledger.get_balance(account_id)
    assert balance.balance == Decimal("34.50")
    assert balance.total_purchased == Decimal("50")
    assert balance.total_used == Decimal("15.50")
    assert balance.balance == balance.total_purchased - balance.total_used
    assert balance.services_paused is False


@pytest.mark.asyncio
async def test_usage_beyond_balance_is_rejected(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that a debit larger than the balance writes nothing."""
    ledger = LedgerService(db_session)
    await ledger.apply(account_id, Decimal("4"), LedgerEntryType.PURCHASE, "Credit purchase")
    await db_session.commit()

    with pytest.raises(InsufficientFunds) as exc_info:
        await ledger.apply(account_id, Decimal("-5"), LedgerEntryType.USAGE, "Agent creation")

    assert exc_info.value.balance == Decimal("4.00")
    assert exc_info.value.requested == Decimal("5.00")
    assert exc_info.value.status_code == 402

    balance = await ledger.get_balance(account_id)
    assert balance.balance == Decimal("4.00")
    assert await _entry_count(db_session, account_id) == 1


@pytest.mark.asyncio
async def test_usage_can_drain_balance_to_zero(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that spending the exact balance is allowed and pauses services."""
    ledger = LedgerService(db_session)
    await ledger.apply(account_id, Decimal("5"), LedgerEntryType.PURCHASE, "Credit purchase")

    entry = await ledger.apply(account_id, Decimal("-5"), LedgerEntryType.USAGE, "Agent creation")

    assert entry.balance_after == Decimal("0")
    balance = await ledger.get_balance(account_id)
    assert balance.services_paused is True


@pytest.mark.asyncio
async def test_negative_balance_allowed_when_enabled(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that accounts flagged for negative balances can overdraw."""
    ledger = LedgerService(db_session)
    balance = await ledger.get_balance(account_id)
    balance.allow_negative_balance = True
    await db_session.flush()

    entry = await ledger.apply(account_id, Decimal("-3"), LedgerEntryType.USAGE, "Call - 1 min")

    assert entry.balance_after == Decimal("-3")
    assert (await ledger.get_balance(account_id)).services_paused is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount,entry_type",
    [
        (Decimal("0"), LedgerEntryType.ADJUSTMENT),
        (Decimal("5"), LedgerEntryType.USAGE),
        (Decimal("-5"), LedgerEntryType.PURCHASE),
        (Decimal("-5"), LedgerEntryType.SUBSCRIPTION_CREDIT),
    ],
)
async def test_entry_sign_rules(db_session: AsyncSession, amount: Decimal, entry_type: LedgerEntryType) -> None:
    """Test that zero amounts and wrongly signed entries are rejected."""
    with pytest.raises(ValidationError):
        await LedgerService(db_session).apply(uuid4(), amount, entry_type, "bad entry")


@pytest.mark.asyncio
async def test_repeated_purchase_credit_is_ignored(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that one purchase can credit the balance only once."""
    ledger = LedgerService(db_session)
    purchase_id = uuid4()

    first = await ledger.apply(account_id, Decimal("50"), LedgerEntryType.PURCHASE, "Credit purchase", purchase_id=purchase_id)
    second = await ledger.apply(account_id, Decimal("50"), LedgerEntryType.PURCHASE, "Credit purchase", purchase_id=purchase_id)

    assert second.id == first.id
    assert (await ledger.get_balance(account_id)).balance == Decimal("50")
    assert await _entry_count(db_session, account_id) == 1


@pytest.mark.asyncio
async def test_low_credit_notification_fires_once_per_crossing(
    db_session: AsyncSession, account_id: UUID, notifier, channels
) -> None:
    """Test the low-credit flag: notify on crossing, stay quiet below, re-arm above."""
    ledger = LedgerService(db_session, notifier=notifier)
    usage = UsageService(db_session, channels=channels, notifier=notifier)

    await ledger.apply(account_id, Decimal("50"), LedgerEntryType.PURCHASE, "Credit purchase")
    await usage.debit(account_id, Decimal("41"), "Calls")
    balance = await ledger.get_balance(account_id)
    assert balance.balance == Decimal("9")
    assert balance.low_credit_notified is True
    assert notifier.types().count("low_credits") == 1

    await usage.debit(account_id, Decimal("1"), "Calls")
    assert notifier.types().count("low_credits") == 1

    await ledger.apply(account_id, Decimal("50"), LedgerEntryType.PURCHASE, "Credit purchase")
    assert (await ledger.get_balance(account_id)).low_credit_notified is False

    await usage.debit(account_id, Decimal("50"), "Calls")
    assert notifier.types().count("low_credits") == 2
    assert notifier.types().count("credits_deducted") == 3


@pytest.mark.asyncio
async def test_negative_adjustment_reverses_credits(db_session: AsyncSession, account_id: UUID) -> None:
    """Test that compensating adjustments are not limited by the balance."""
    ledger = LedgerService(db_session)
    await ledger.apply(account_id, Decimal("10"), LedgerEntryType.PURCHASE, "Credit purchase")

    entry = await ledger.record_adjustment(account_id, Decimal("-15"), "Refund reversal")

    assert entry.type == LedgerEntryType.ADJUSTMENT
    assert entry.balance_after == Decimal("-5")
    balance = await ledger.get_balance(account_id)
    assert balance.total_used == Decimal("15")
    assert balance.services_paused is True


@pytest.mark.asyncio
async def test_list_ledger_newest_first_with_filter(db_session: AsyncSession, account_id: UUID) -> None:
    """Test ledger listing order and type filter."""
    ledger = LedgerService(db_session)
    await ledger.apply(account_id, Decimal("20"), LedgerEntryType.PURCHASE, "Credit purchase")
    await ledger.apply(account_id, Decimal("-3"), LedgerEntryType.USAGE, "Call - 1 min")
    await ledger.apply(account_id, Decimal("-5"), LedgerEntryType.USAGE, "Agent creation")
    await db_session.commit()

    entries = await ledger.list_ledger(account_id)
    assert [e.balance_after for e in entries] == [Decimal("12"), Decimal("17"), Decimal("20")]

    usage_only = await ledger.list_ledger(account_id, entry_type=LedgerEntryType.USAGE)
    assert len(usage_only) == 2
    assert all(e.type == LedgerEntryType.USAGE for e in usage_only)

    assert await ledger.list_ledger(uuid4()) == []


@pytest.mark.asyncio
async def test_check_available(db_session: AsyncSession, account_id: UUID, channels) -> None:
    """Test the advisory pre-check used before starting a call."""
    usage = UsageService(db_session, channels=channels)
    await LedgerService(db_session).apply(account_id, Decimal("5"), LedgerEntryType.PURCHASE, "Credit purchase")

    assert await usage.check_available(account_id, Decimal("5")) is True
    assert await usage.check_available(account_id, Decimal("6")) is False
