"""Daily grants, monthly bonuses with rollover, renewal and expiry sweeps.

Every grant is gated by a calendar date stored on the account and written in
the same compare-and-swap statement as the balance change, so repeating a
call on the same UTC day is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.account import Account
from services.clock import as_utc, is_billing_day, utcnow
from services.credits import (
    Buckets,
    LedgerAction,
    LedgerMutation,
    apply_balances,
    load_account,
    run_balance_transaction,
    set_bucket,
    write_account,
)
from services.entitlements import (
    PAID_PLANS,
    PlanTier,
    is_unlimited,
    monthly_bonus_amount,
    parse_plan,
    plan_spec,
)
from services.payment_provider import PaymentProvider
from services.subscriptions import renew_subscription

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20


@dataclass
class GrantSweepSummary:
    processed: int = 0
    success_count: int = 0
    fail_count: int = 0
    daily_granted: int = 0
    bonuses_granted: int = 0
    renewals_succeeded: int = 0
    renewals_failed: int = 0
    expired: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def ensure_daily_grant(
    db: AsyncSession,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[LedgerMutation]:
    """Reset the daily bucket once per UTC day; returns None when already granted."""
    now = now or utcnow()
    today = now.date()
    account = await load_account(db, account_id)
    if account.last_daily_grant_date == today:
        return None

    if is_unlimited(account.plan):
        await write_account(db, account, now=now, last_daily_grant_date=today)
        return None

    spec = plan_spec(account.plan)
    return await set_bucket(
        db,
        account_id,
        "daily",
        spec.daily_lunas,
        action=LedgerAction.DAILY,
        description=f"Daily lunas ({spec.label} {spec.daily_lunas})",
        now=now,
        account=account,
        last_daily_grant_date=today,
    )


async def grant_monthly_bonus(
    db: AsyncSession,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[LedgerMutation]:
    """Apply the rollover cap and credit the tier's monthly bonus on the billing day.

    The carry pool is ``monthly_bonus + purchased``; anything above
    ``ROLLOVER_CAP`` is forfeited, monthly_bonus first. Accounts whose term
    ends within the renewal window get nothing, so a failed renewal costs
    that cycle's bonus.
    """
    now = now or utcnow()
    today = now.date()
    account = await load_account(db, account_id)
    tier = parse_plan(account.plan)
    if tier not in PAID_PLANS or is_unlimited(tier):
        return None
    if account.monthly_bonus_granted_on == today:
        return None
    if not is_billing_day(account.plan_started_at, today):
        return None
    expires_at = as_utc(account.plan_expires_at)
    if expires_at is None or expires_at <= now + timedelta(days=settings.AUTO_RENEW_WINDOW_DAYS):
        return None

    before = Buckets.from_account(account)
    cap = Decimal(settings.ROLLOVER_CAP)
    pool = before.monthly_bonus + before.purchased
    if pool > cap:
        forfeit = pool - cap
        from_monthly = min(before.monthly_bonus, forfeit)
        trimmed = before.with_bucket("monthly_bonus", before.monthly_bonus - from_monthly).with_bucket(
            "purchased", before.purchased - (forfeit - from_monthly)
        )
        await apply_balances(
            db,
            account,
            trimmed,
            action=LedgerAction.ROLLOVER_EXPIRE,
            description=f"Rollover above {cap} lunas expired",
            now=now,
        )
        account = await load_account(db, account_id)
        before = trimmed

    bonus = monthly_bonus_amount(tier)
    return await apply_balances(
        db,
        account,
        before.with_bucket("monthly_bonus", before.monthly_bonus + bonus),
        action=LedgerAction.MONTHLY_BONUS,
        amount=bonus,
        description=f"Monthly {plan_spec(tier).label} bonus (+{bonus})",
        now=now,
        monthly_bonus_granted_on=today,
    )


async def expire_plan_if_due(
    db: AsyncSession,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[LedgerMutation]:
    """Downgrade a lapsed paid plan to free.

    Accounts still set to auto-renew keep their plan for ``RENEWAL_GRACE_DAYS``
    past expiry so renewal can be retried; after that the billing key is
    dropped with the plan.
    """
    now = now or utcnow()
    account = await load_account(db, account_id)
    tier = parse_plan(account.plan)
    expires_at = as_utc(account.plan_expires_at)
    if tier not in PAID_PLANS or expires_at is None or expires_at > now:
        return None

    renewable = bool(account.billing_key) and bool(account.auto_renew)
    if renewable and now < expires_at + timedelta(days=settings.RENEWAL_GRACE_DAYS):
        return None

    if renewable:
        description = f"{plan_spec(tier).label} expired after failed renewals; switched to Free"
    else:
        description = f"{plan_spec(tier).label} expired; switched to Free"
    return await apply_balances(
        db,
        account,
        Buckets.from_account(account),
        action=LedgerAction.PLAN_EXPIRE,
        amount=0,
        description=description,
        now=now,
        plan=PlanTier.FREE.value,
        plan_expires_at=None,
        auto_renew=False,
        billing_key=None,
    )


async def sweep_account(
    db: AsyncSession,
    provider: PaymentProvider,
    account_id: str,
    summary: GrantSweepSummary,
    *,
    now: datetime,
) -> None:
    """Run every scheduled step for one account, each in its own transaction."""
    if await run_balance_transaction(db, lambda: ensure_daily_grant(db, account_id, now=now)) is not None:
        summary.daily_granted += 1

    renewal = await renew_subscription(db, provider, account_id, now=now)
    if renewal == "succeeded":
        summary.renewals_succeeded += 1
    elif renewal == "failed":
        summary.renewals_failed += 1

    if await run_balance_transaction(db, lambda: grant_monthly_bonus(db, account_id, now=now)) is not None:
        summary.bonuses_granted += 1

    if await run_balance_transaction(db, lambda: expire_plan_if_due(db, account_id, now=now)) is not None:
        summary.expired += 1


async def _sweep_candidates(session_maker: async_sessionmaker, now: datetime) -> List[str]:
    async with session_maker() as db:
        result = await db.execute(
            select(Account.id)
            .where(
                or_(
                    Account.last_daily_grant_date.is_(None),
                    Account.last_daily_grant_date < now.date(),
                    Account.plan != PlanTier.FREE.value,
                )
            )
            .order_by(Account.id)
        )
        return list(result.scalars().all())


async def run_grant_sweep(
    session_maker: async_sessionmaker,
    provider: PaymentProvider,
    *,
    now: Optional[datetime] = None,
) -> GrantSweepSummary:
    """Sweep all accounts; one account's failure never stops the rest."""
    now = now or utcnow()
    summary = GrantSweepSummary()
    account_ids = await _sweep_candidates(session_maker, now)

    for account_id in account_ids:
        summary.processed += 1
        try:
            async with session_maker() as db:
                await sweep_account(db, provider, account_id, summary, now=now)
            summary.success_count += 1
        except Exception as exc:
            summary.fail_count += 1
            logger.exception("Grant sweep failed for account %s", account_id)
            if len(summary.errors) < MAX_REPORTED_ERRORS:
                summary.errors.append({"account_id": account_id, "error": f"{type(exc).__name__}: {exc}"})

    logger.info(
        "Grant sweep done: processed=%s ok=%s failed=%s daily=%s bonuses=%s renewals=%s/%s expired=%s",
        summary.processed,
        summary.success_count,
        summary.fail_count,
        summary.daily_granted,
        summary.bonuses_granted,
        summary.renewals_succeeded,
        summary.renewals_failed,
        summary.expired,
    )
    return summary
