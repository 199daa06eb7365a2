from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from models.payment import PaymentRecord
from services import grants, subscriptions
from services.clock import as_utc
from services.credits import Buckets, debit, get_ledger_entries, load_account, run_balance_transaction
from services.crypto import encrypt_billing_key
from services.errors import StoreUnavailableError
from services.grants import ensure_daily_grant, expire_plan_if_due, grant_monthly_bonus, run_grant_sweep
from services.subscriptions import renew_subscription


NOW = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)
STARTED = datetime(2026, 2, 15, 9, 0, tzinfo=timezone.utc)
NEXT_DAY = NOW + timedelta(days=1)


def _actions(entries):
    return [(entry["action"], entry["amount"]) for entry in entries]


@pytest.mark.asyncio
async def test_daily_grant_resets_bucket_once_per_day(db, account_factory):
    await account_factory("grant-daily", daily=3, purchased=10)

    first = await run_balance_transaction(db, lambda: ensure_daily_grant(db, "grant-daily", now=NOW))
    second = await run_balance_transaction(db, lambda: ensure_daily_grant(db, "grant-daily", now=NOW))

    assert first.amount == 17
    assert second is None
    account = await load_account(db, "grant-daily", for_update=False)
    assert Buckets.from_account(account).daily == 20
    assert account.last_daily_grant_date == date(2026, 3, 15)
    assert _actions(await get_ledger_entries(db, "grant-daily")) == [("daily", 17)]


@pytest.mark.asyncio
async def test_daily_grant_is_not_repeated_after_concurrent_grant(session_maker, account_factory):
    await account_factory("grant-race", daily=0, last_daily_grant_date=date(2026, 3, 14))
    load_real = grants.load_account
    interleaved = []

    async def load_then_grant_elsewhere(db, account_id, **kwargs):
        account = await load_real(db, account_id, **kwargs)
        if not interleaved:
            interleaved.append(account_id)
            async with session_maker() as other:
                await run_balance_transaction(other, lambda: ensure_daily_grant(other, account_id, now=NOW))
                await run_balance_transaction(other, lambda: debit(other, account_id, 5, now=NOW))
        return account

    async with session_maker() as session:
        with patch.object(grants, "load_account", load_then_grant_elsewhere):
            result = await run_balance_transaction(
                session, lambda: ensure_daily_grant(session, "grant-race", now=NOW)
            )

    assert result is None
    async with session_maker() as check:
        account = await load_account(check, "grant-race", for_update=False)
        assert Buckets.from_account(account).daily == 15
        assert sorted(_actions(await get_ledger_entries(check, "grant-race"))) == [("daily", 20), ("use", -5)]


@pytest.mark.asyncio
async def test_daily_grant_for_unlimited_plan_only_advances_date(db, account_factory):
    await account_factory("grant-unlimited", plan="tier3", promotional=5)

    result = await run_balance_transaction(db, lambda: ensure_daily_grant(db, "grant-unlimited", now=NOW))

    assert result is None
    account = await load_account(db, "grant-unlimited", for_update=False)
    assert account.last_daily_grant_date == date(2026, 3, 15)
    assert Buckets.from_account(account).total == 5
    assert await get_ledger_entries(db, "grant-unlimited") == []


@pytest.mark.asyncio
async def test_monthly_bonus_caps_rollover_before_crediting(db, account_factory):
    await account_factory(
        "grant-rollover",
        plan="tier1",
        purchased=5000,
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 4, 15, 9, 0, tzinfo=timezone.utc),
    )

    mutation = await run_balance_transaction(db, lambda: grant_monthly_bonus(db, "grant-rollover", now=NOW))

    assert mutation.amount == 1500
    account = await load_account(db, "grant-rollover", for_update=False)
    assert Buckets.from_account(account).purchased == 3000
    assert Buckets.from_account(account).monthly_bonus == 1500
    assert account.monthly_bonus_granted_on == date(2026, 3, 15)
    entries = await get_ledger_entries(db, "grant-rollover")
    assert sorted(_actions(entries)) == [("monthly_bonus", 1500), ("rollover_expire", -2000)]


@pytest.mark.asyncio
async def test_rollover_forfeits_monthly_bonus_before_purchased(db, account_factory):
    await account_factory(
        "grant-forfeit",
        plan="tier2",
        monthly_bonus=1000,
        purchased=2500,
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 4, 15, 9, 0, tzinfo=timezone.utc),
    )

    await run_balance_transaction(db, lambda: grant_monthly_bonus(db, "grant-forfeit", now=NOW))

    buckets = Buckets.from_account(await load_account(db, "grant-forfeit", for_update=False))
    assert buckets.purchased == 2500
    assert buckets.monthly_bonus == 500 + 3000


@pytest.mark.asyncio
async def test_monthly_bonus_is_idempotent_and_date_gated(db, account_factory):
    await account_factory(
        "grant-once",
        plan="tier1",
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 4, 15, 9, 0, tzinfo=timezone.utc),
    )

    first = await run_balance_transaction(db, lambda: grant_monthly_bonus(db, "grant-once", now=NOW))
    again = await run_balance_transaction(db, lambda: grant_monthly_bonus(db, "grant-once", now=NOW))
    off_day = await run_balance_transaction(
        db,
        lambda: grant_monthly_bonus(db, "grant-once", now=datetime(2026, 3, 16, 9, 0, tzinfo=timezone.utc)),
    )

    assert first is not None
    assert again is None
    assert off_day is None
    assert _actions(await get_ledger_entries(db, "grant-once")) == [("monthly_bonus", 1500)]


@pytest.mark.asyncio
async def test_monthly_bonus_withheld_when_term_ends_within_renewal_window(db, account_factory):
    await account_factory(
        "grant-lapsing",
        plan="tier1",
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )

    result = await run_balance_transaction(db, lambda: grant_monthly_bonus(db, "grant-lapsing", now=NOW))

    assert result is None


@pytest.mark.asyncio
async def test_renewal_charges_key_and_extends_from_anchor(db, account_factory, fake_provider):
    await account_factory(
        "renew-ok",
        plan="tier1",
        auto_renew=True,
        billing_key=encrypt_billing_key("cust_renew_ok"),
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )

    outcome = await renew_subscription(db, fake_provider, "renew-ok", now=NOW)
    repeat = await renew_subscription(db, fake_provider, "renew-ok", now=NOW)

    assert outcome == "succeeded"
    assert repeat is None
    assert len(fake_provider.charges) == 1
    assert fake_provider.charges[0]["billing_key"] == "cust_renew_ok"
    assert fake_provider.charges[0]["amount"] == 13900

    account = await load_account(db, "renew-ok", for_update=False)
    assert as_utc(account.plan_expires_at) == datetime(2026, 4, 15, 9, 0, tzinfo=timezone.utc)
    assert account.plan == "tier1"
    assert ("auto_renewal", 0) in _actions(await get_ledger_entries(db, "renew-ok"))


@pytest.mark.asyncio
async def test_failed_renewal_is_logged_and_not_retried_same_day(db, account_factory, fake_provider):
    await account_factory(
        "renew-declined",
        plan="tier2",
        auto_renew=True,
        billing_key=encrypt_billing_key("cust_declined"),
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )
    fake_provider.charge_outcome = "declined"

    outcome = await renew_subscription(db, fake_provider, "renew-declined", now=NOW)
    repeat = await renew_subscription(db, fake_provider, "renew-declined", now=NOW)

    assert outcome == "failed"
    assert repeat is None
    assert len(fake_provider.charges) == 1
    account = await load_account(db, "renew-declined", for_update=False)
    assert account.plan == "tier2"
    assert account.last_renewal_attempt_on == date(2026, 3, 15)
    assert _actions(await get_ledger_entries(db, "renew-declined")) == [("renewal_failed", 0)]


@pytest.mark.asyncio
async def test_charged_but_unapplied_renewal_is_applied_without_recharging(db, account_factory, fake_provider):
    await account_factory(
        "renew-stuck",
        plan="tier1",
        auto_renew=True,
        billing_key=encrypt_billing_key("cust_stuck"),
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )

    with patch.object(subscriptions, "_apply_renewal", side_effect=StoreUnavailableError("busy")):
        with pytest.raises(StoreUnavailableError):
            await renew_subscription(db, fake_provider, "renew-stuck", now=NOW)

    result = await db.execute(
        select(PaymentRecord)
        .where(PaymentRecord.account_id == "renew-stuck")
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one()
    assert record.status == "paid"
    assert record.fulfilled_at is None
    assert record.external_payment_id == "imp_renew_1"
    assert record.merchant_uid.startswith("renew_")
    account = await load_account(db, "renew-stuck", for_update=False)
    assert as_utc(account.plan_expires_at) == datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

    outcome = await renew_subscription(db, fake_provider, "renew-stuck", now=NEXT_DAY)
    repeat = await renew_subscription(db, fake_provider, "renew-stuck", now=NEXT_DAY)

    assert outcome == "succeeded"
    assert repeat is None
    assert len(fake_provider.charges) == 1
    account = await load_account(db, "renew-stuck", for_update=False)
    assert as_utc(account.plan_expires_at) == datetime(2026, 4, 15, 9, 0, tzinfo=timezone.utc)
    assert _actions(await get_ledger_entries(db, "renew-stuck")) == [("auto_renewal", 0)]


@pytest.mark.asyncio
async def test_renewal_with_unknown_charge_outcome_is_not_recharged(db, account_factory, fake_provider):
    await account_factory(
        "renew-unknown",
        plan="tier1",
        auto_renew=True,
        billing_key=encrypt_billing_key("cust_unknown"),
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )
    db.add(
        PaymentRecord(
            external_payment_id="renew_unknown_20260314",
            merchant_uid="renew_unknown_20260314",
            account_id="renew-unknown",
            plan="tier1",
            amount=13900,
            status="pending",
            pay_method="billing_key",
            created_at=NOW,
        )
    )
    await db.commit()

    assert await renew_subscription(db, fake_provider, "renew-unknown", now=NOW) == "failed"
    assert fake_provider.charges == []


@pytest.mark.asyncio
async def test_provider_error_during_renewal_counts_as_failure(db, account_factory, fake_provider):
    await account_factory(
        "renew-error",
        plan="tier1",
        auto_renew=True,
        billing_key=encrypt_billing_key("cust_error"),
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )
    fake_provider.charge_outcome = "error"

    assert await renew_subscription(db, fake_provider, "renew-error", now=NOW) == "failed"


@pytest.mark.asyncio
async def test_plan_without_billing_key_expires_on_time(db, account_factory):
    await account_factory(
        "expire-now",
        plan="tier1",
        daily=50,
        monthly_bonus=700,
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc),
    )

    mutation = await run_balance_transaction(db, lambda: expire_plan_if_due(db, "expire-now", now=NOW))

    assert mutation is not None
    account = await load_account(db, "expire-now", for_update=False)
    assert account.plan == "free"
    assert account.plan_expires_at is None
    assert Buckets.from_account(account).monthly_bonus == 700
    assert _actions(await get_ledger_entries(db, "expire-now")) == [("plan_expire", 0)]


@pytest.mark.asyncio
async def test_renewable_plan_keeps_grace_period(db, account_factory):
    await account_factory(
        "expire-grace",
        plan="tier1",
        auto_renew=True,
        billing_key=encrypt_billing_key("cust_grace"),
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc),
    )

    within_grace = await run_balance_transaction(db, lambda: expire_plan_if_due(db, "expire-grace", now=NOW))
    assert within_grace is None

    later = datetime(2026, 3, 18, 9, 0, tzinfo=timezone.utc)
    lapsed = await run_balance_transaction(db, lambda: expire_plan_if_due(db, "expire-grace", now=later))
    assert lapsed is not None
    account = await load_account(db, "expire-grace", for_update=False)
    assert account.plan == "free"
    assert account.billing_key is None
    assert account.auto_renew is False


@pytest.mark.asyncio
async def test_sweep_isolates_failing_accounts(session_maker, account_factory, fake_provider):
    await account_factory("sweep-healthy", daily=0)
    await account_factory(
        "sweep-broken",
        plan="tier1",
        auto_renew=True,
        billing_key="not-a-fernet-token",
        plan_started_at=STARTED,
        plan_expires_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )

    summary = await run_grant_sweep(session_maker, fake_provider, now=NOW)

    assert summary.processed == 2
    assert summary.success_count == 1
    assert summary.fail_count == 1
    assert summary.errors[0]["account_id"] == "sweep-broken"
    assert fake_provider.charges == []

    async with session_maker() as check:
        healthy = await load_account(check, "sweep-healthy", for_update=False)
        assert Buckets.from_account(healthy).daily == 20


@pytest.mark.asyncio
async def test_sweep_skips_free_accounts_already_granted_today(session_maker, account_factory, fake_provider):
    await account_factory("sweep-done", daily=20, last_daily_grant_date=date(2026, 3, 15))

    summary = await run_grant_sweep(session_maker, fake_provider, now=NOW)

    assert summary.processed == 0
    assert summary.as_dict()["errors"] == []
