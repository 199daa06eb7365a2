from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from models.credit_ledger import LedgerEntry
from services import accounts
from services.credits import (
    Buckets,
    LedgerAction,
    credit,
    debit,
    get_ledger_entries,
    has_usage_since,
    load_account,
    run_balance_transaction,
    set_bucket,
    write_account,
)
from services.errors import BalanceConflictError, InsufficientCredit, PlanUpgradeRequired, StoreUnavailableError


NOW = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)


def test_drain_order_follows_bucket_priority():
    buckets = Buckets(daily=Decimal("5"), monthly_bonus=Decimal("0"), promotional=Decimal("3"), purchased=Decimal("10"))
    after = buckets.drain(7)
    assert after.daily == 0
    assert after.monthly_bonus == 0
    assert after.promotional == 1
    assert after.purchased == 10
    assert after.total == 11


def test_drain_rejects_overdraft_without_partial_change():
    buckets = Buckets(daily=Decimal("2"), promotional=Decimal("1"))
    with pytest.raises(InsufficientCredit) as exc_info:
        buckets.drain(Decimal("4.5"))
    assert exc_info.value.shortfall == Decimal("1.5")
    assert buckets.total == 3


def test_with_bucket_refuses_negative_values():
    with pytest.raises(ValueError):
        Buckets().with_bucket("daily", -1)


@pytest.mark.asyncio
async def test_debit_writes_buckets_and_one_use_entry(db, account_factory):
    await account_factory("ledger-1", daily=5, promotional=3, purchased=10)

    mutation = await run_balance_transaction(db, lambda: debit(db, "ledger-1", 7, "render_1img", now=NOW))

    assert mutation.before.total == 18
    assert mutation.total == 11
    account = await load_account(db, "ledger-1", for_update=False)
    assert Buckets.from_account(account) == Buckets(
        daily=Decimal("0"), monthly_bonus=Decimal("0"), promotional=Decimal("1"), purchased=Decimal("10")
    )
    assert account.balance_version == 1

    entries = await get_ledger_entries(db, "ledger-1")
    assert len(entries) == 1
    assert entries[0]["action"] == "use"
    assert entries[0]["amount"] == -7
    assert entries[0]["balance_after"] == 11
    assert entries[0]["feature"] == "render_1img"


@pytest.mark.asyncio
async def test_failed_debit_leaves_account_untouched(db, account_factory):
    await account_factory("ledger-2", daily=1, purchased=1)

    with pytest.raises(InsufficientCredit):
        await run_balance_transaction(db, lambda: debit(db, "ledger-2", 5, "batch_5", now=NOW))

    account = await load_account(db, "ledger-2", for_update=False)
    assert Buckets.from_account(account).total == 2
    assert account.balance_version == 0
    count = await db.execute(select(func.count(LedgerEntry.id)))
    assert count.scalar() == 0


@pytest.mark.asyncio
async def test_unlimited_plan_debit_keeps_buckets_and_logs_zero(db, account_factory):
    await account_factory("ledger-3", plan="tier3", promotional=4)

    mutation = await run_balance_transaction(db, lambda: debit(db, "ledger-3", 10, "youtube_upload", now=NOW))

    assert mutation.amount == 0
    assert mutation.buckets == mutation.before
    account = await load_account(db, "ledger-3", for_update=False)
    assert Buckets.from_account(account).promotional == 4
    entries = await get_ledger_entries(db, "ledger-3")
    assert [(entry["action"], entry["amount"]) for entry in entries] == [("use", 0)]


@pytest.mark.asyncio
async def test_credit_adds_to_named_bucket(db, account_factory):
    await account_factory("ledger-4", daily=20)

    mutation = await run_balance_transaction(
        db,
        lambda: credit(db, "ledger-4", "promotional", 200, LedgerAction.REFERRAL_BONUS, "Referral", now=NOW),
    )

    assert mutation.buckets.promotional == 200
    assert mutation.total == 220
    entries = await get_ledger_entries(db, "ledger-4")
    assert entries[0]["amount"] == 200
    assert entries[0]["balance_after"] == 220


@pytest.mark.asyncio
async def test_set_bucket_records_net_change(db, account_factory):
    await account_factory("ledger-5", daily=3, purchased=7)

    mutation = await run_balance_transaction(db, lambda: set_bucket(db, "ledger-5", "daily", 20, now=NOW))

    assert mutation.amount == 17
    assert mutation.buckets.daily == 20
    assert mutation.total == 27


@pytest.mark.asyncio
async def test_stale_version_write_is_rejected(session_maker, account_factory):
    await account_factory("ledger-6", daily=10)

    async with session_maker() as first, session_maker() as second:
        stale = await load_account(first, "ledger-6", for_update=False)
        await run_balance_transaction(second, lambda: debit(second, "ledger-6", 4, now=NOW))

        with pytest.raises(BalanceConflictError):
            await write_account(first, stale, buckets=Buckets(daily=Decimal("9")), now=NOW)
        await first.rollback()

    async with session_maker() as check:
        account = await load_account(check, "ledger-6", for_update=False)
        assert Buckets.from_account(account).daily == 6


@pytest.mark.asyncio
async def test_balance_transaction_retries_after_conflict(db, account_factory):
    await account_factory("ledger-7", daily=10)
    attempts = []

    async def operation():
        attempts.append(1)
        if len(attempts) == 1:
            raise BalanceConflictError("ledger-7", 0)
        return await debit(db, "ledger-7", 1, now=NOW)

    mutation = await run_balance_transaction(db, operation)
    assert len(attempts) == 2
    assert mutation.total == 9


@pytest.mark.asyncio
async def test_balance_transaction_gives_up_as_transient_failure(db):
    async def operation():
        raise BalanceConflictError("ledger-8", 0)

    with pytest.raises(StoreUnavailableError) as exc_info:
        await run_balance_transaction(db, operation, attempts=2)
    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_has_usage_since_only_counts_later_use(db, account_factory):
    await account_factory("ledger-9", daily=10)
    await run_balance_transaction(db, lambda: debit(db, "ledger-9", 1, now=NOW - timedelta(days=3)))

    assert await has_usage_since(db, "ledger-9", NOW - timedelta(days=5)) is True
    assert await has_usage_since(db, "ledger-9", NOW - timedelta(days=1)) is False


@pytest.mark.asyncio
async def test_debit_on_checked_row_rejects_concurrent_change(session_maker, account_factory):
    await account_factory("ledger-checked", daily=10)

    async with session_maker() as first, session_maker() as second:
        checked = await load_account(first, "ledger-checked")
        await run_balance_transaction(second, lambda: debit(second, "ledger-checked", 4, now=NOW))

        with pytest.raises(BalanceConflictError):
            await debit(first, "ledger-checked", 1, now=NOW, account=checked)
        await first.rollback()

    async with session_maker() as check:
        account = await load_account(check, "ledger-checked", for_update=False)
        assert Buckets.from_account(account).daily == 6


@pytest.mark.asyncio
async def test_feature_use_rechecks_plan_after_concurrent_downgrade(session_maker, account_factory):
    await account_factory("ledger-downgrade", plan="tier1", promotional=50, last_daily_grant_date=NOW.date())
    load_real = accounts.load_account
    interleaved = []

    async def load_then_downgrade_elsewhere(db, account_id, **kwargs):
        account = await load_real(db, account_id, **kwargs)
        if not interleaved:
            interleaved.append(account_id)
            async with session_maker() as other:
                target = await load_account(other, account_id)
                await write_account(other, target, now=NOW, plan="free")
                await other.commit()
        return account

    async with session_maker() as session:
        with patch.object(accounts, "load_account", load_then_downgrade_elsewhere):
            with pytest.raises(PlanUpgradeRequired):
                await accounts.use_feature(session, "ledger-downgrade", "youtube_upload", now=NOW)

    async with session_maker() as check:
        account = await load_account(check, "ledger-downgrade", for_update=False)
        assert Buckets.from_account(account).promotional == 50
        assert await get_ledger_entries(check, "ledger-downgrade") == []


@pytest.mark.asyncio
async def test_deleting_account_keeps_ledger_entries(session_maker, account_factory):
    await account_factory("ledger-keep", daily=5)

    async with session_maker() as session:
        await run_balance_transaction(session, lambda: debit(session, "ledger-keep", 2, now=NOW))
        account = await load_account(session, "ledger-keep", for_update=False)
        await session.delete(account)
        await session.commit()

    async with session_maker() as check:
        result = await check.execute(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == "ledger-keep")
        )
        assert result.scalar() == 1
