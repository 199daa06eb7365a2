"""Credit ledger: four-bucket balances, atomic debits/credits and the audit trail."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_ledger import LedgerEntry
from services.clock import utcnow
from services.entitlements import ENTITLEMENTS, is_unlimited
from services.errors import AccountNotFound, BalanceConflictError, InsufficientCredit, StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO = Decimal("0")
MAX_CONFLICT_ATTEMPTS = 3


class LedgerAction(str, Enum):
    DAILY = "daily"
    MONTHLY_BONUS = "monthly_bonus"
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    PROMO = "promo"
    REFERRAL_BONUS = "referral_bonus"
    USE = "use"
    ROLLOVER_EXPIRE = "rollover_expire"
    PLAN_EXPIRE = "plan_expire"
    REFUND = "refund"
    RENEWAL_FAILED = "renewal_failed"
    AUTO_RENEWAL = "auto_renewal"
    CANCEL = "cancel"
    SIGNUP_BONUS = "signup_bonus"


BUCKET_ORDER = ("daily", "monthly_bonus", "promotional", "purchased")
BUCKET_COLUMNS = {
    "daily": "daily_lunas",
    "monthly_bonus": "monthly_bonus_lunas",
    "promotional": "promotional_lunas",
    "purchased": "purchased_lunas",
}


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _bucket_name(bucket: str) -> str:
    if bucket not in BUCKET_COLUMNS:
        raise ValueError(f"Unknown credit bucket '{bucket}'")
    return bucket


@dataclass(frozen=True)
class Buckets:
    """Immutable snapshot of an account's four credit buckets."""

    daily: Decimal = ZERO
    monthly_bonus: Decimal = ZERO
    promotional: Decimal = ZERO
    purchased: Decimal = ZERO

    @classmethod
    def from_account(cls, account: Account) -> "Buckets":
        return cls(**{bucket: to_decimal(getattr(account, column)) for bucket, column in BUCKET_COLUMNS.items()})

    @property
    def total(self) -> Decimal:
        return self.daily + self.monthly_bonus + self.promotional + self.purchased

    def get(self, bucket: str) -> Decimal:
        return getattr(self, _bucket_name(bucket))

    def with_bucket(self, bucket: str, value: Any) -> "Buckets":
        amount = to_decimal(value)
        if amount < 0:
            raise ValueError(f"Bucket '{bucket}' cannot go negative")
        return replace(self, **{_bucket_name(bucket): amount})

    def drain(self, amount: Any) -> "Buckets":
        """Take ``amount`` in fixed bucket order, or raise without draining anything."""
        remaining = to_decimal(amount)
        if remaining < 0:
            raise ValueError("Debit amount must not be negative")
        if remaining > self.total:
            raise InsufficientCredit(required=remaining, available=self.total)

        values: Dict[str, Decimal] = {}
        for bucket in BUCKET_ORDER:
            current = getattr(self, bucket)
            taken = min(current, remaining)
            values[bucket] = current - taken
            remaining -= taken
        return Buckets(**values)

    def column_values(self) -> Dict[str, Decimal]:
        return {column: getattr(self, bucket) for bucket, column in BUCKET_COLUMNS.items()}

    def as_dict(self) -> Dict[str, float]:
        payload = {bucket: float(getattr(self, bucket)) for bucket in BUCKET_ORDER}
        payload["total"] = float(self.total)
        return payload


@dataclass(frozen=True)
class LedgerMutation:
    """Result of one ledger write: balances before/after and the appended entry."""

    account_id: str
    action: str
    amount: Decimal
    before: Buckets
    buckets: Buckets
    plan: str
    entry_id: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.buckets.total

    def as_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "amount": float(self.amount),
            "plan": self.plan,
            "balances": self.buckets.as_dict(),
            "lunas_total": float(self.buckets.total),
        }


async def load_account(db: AsyncSession, account_id: str, *, for_update: bool = True) -> Account:
    """Fetch an account, refreshing any identity-mapped copy; row-locked on PostgreSQL."""
    query = select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(account_id)
    return account


async def write_account(
    db: AsyncSession,
    account: Account,
    *,
    buckets: Optional[Buckets] = None,
    now: Optional[datetime] = None,
    **fields: Any,
) -> None:
    """Compare-and-swap write keyed on ``balance_version``."""
    values: Dict[str, Any] = dict(fields)
    if buckets is not None:
        values.update(buckets.column_values())
    values["balance_version"] = Account.balance_version + 1
    values["updated_at"] = now or utcnow()

    expected_version = int(account.balance_version or 0)
    result = await db.execute(
        update(Account)
        .where(Account.id == account.id, Account.balance_version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BalanceConflictError(account.id, expected_version)


async def append_entry(
    db: AsyncSession,
    *,
    account_id: str,
    action: str,
    amount: Any,
    balance_after: Any,
    feature: Optional[str] = None,
    description: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    entry = LedgerEntry(
        id=str(uuid.uuid4()),
        account_id=account_id,
        action=LedgerAction(action).value,
        amount=to_decimal(amount),
        balance_after=to_decimal(balance_after),
        feature=feature,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        created_at=now or utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def apply_balances(
    db: AsyncSession,
    account: Account,
    after: Buckets,
    *,
    action: str,
    description: Optional[str] = None,
    feature: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    amount: Optional[Any] = None,
    now: Optional[datetime] = None,
    **fields: Any,
) -> LedgerMutation:
    """Write new bucket values (plus any account fields) and append one entry.

    The entry amount defaults to the net change in total balance.
    """
    before = Buckets.from_account(account)
    delta = after.total - before.total if amount is None else to_decimal(amount)
    await write_account(db, account, buckets=after, now=now, **fields)
    entry = await append_entry(
        db,
        account_id=account.id,
        action=action,
        amount=delta,
        balance_after=after.total,
        feature=feature,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        now=now,
    )
    return LedgerMutation(
        account_id=account.id,
        action=LedgerAction(action).value,
        amount=delta,
        before=before,
        buckets=after,
        plan=str(fields.get("plan", account.plan)),
        entry_id=entry.id,
    )


async def debit(
    db: AsyncSession,
    account_id: str,
    amount: Any,
    feature: Optional[str] = None,
    *,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
    account: Optional[Account] = None,
) -> LedgerMutation:
    """Drain ``amount`` daily -> monthly_bonus -> promotional -> purchased.

    Unlimited plans never change a bucket but still append a zero-amount entry.
    Pass ``account`` when the caller already loaded and checked the row; the
    write is then rejected if the row changed since that read.
    """
    cost = to_decimal(amount)
    if cost < 0:
        raise ValueError("Debit amount must not be negative")

    if account is None:
        account = await load_account(db, account_id)
    before = Buckets.from_account(account)
    label = description or _feature_label(feature)

    if is_unlimited(account.plan):
        entry = await append_entry(
            db,
            account_id=account.id,
            action=LedgerAction.USE,
            amount=ZERO,
            balance_after=before.total,
            feature=feature,
            description=f"{label} (unlimited plan)" if label else "Unlimited plan usage",
            now=now,
        )
        return LedgerMutation(
            account_id=account.id,
            action=LedgerAction.USE.value,
            amount=ZERO,
            before=before,
            buckets=before,
            plan=account.plan,
            entry_id=entry.id,
        )

    after = before.drain(cost)
    return await apply_balances(
        db,
        account,
        after,
        action=LedgerAction.USE,
        amount=-cost,
        feature=feature,
        description=label,
        now=now,
    )


async def credit(
    db: AsyncSession,
    account_id: str,
    bucket: str,
    amount: Any,
    action: str,
    description: Optional[str] = None,
    *,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
    **fields: Any,
) -> LedgerMutation:
    """Add ``amount`` to one bucket; never drains."""
    value = to_decimal(amount)
    if value < 0:
        raise ValueError("Credit amount must not be negative")

    account = await load_account(db, account_id)
    before = Buckets.from_account(account)
    after = before.with_bucket(bucket, before.get(bucket) + value)
    return await apply_balances(
        db,
        account,
        after,
        action=action,
        amount=value,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        now=now,
        **fields,
    )


async def set_bucket(
    db: AsyncSession,
    account_id: str,
    bucket: str,
    amount: Any,
    *,
    action: str = LedgerAction.DAILY,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
    account: Optional[Account] = None,
    **fields: Any,
) -> LedgerMutation:
    """Overwrite one bucket (daily reset); the entry records the net change."""
    if account is None:
        account = await load_account(db, account_id)
    before = Buckets.from_account(account)
    after = before.with_bucket(bucket, amount)
    return await apply_balances(db, account, after, action=action, description=description, now=now, **fields)


async def run_balance_transaction(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = MAX_CONFLICT_ATTEMPTS,
) -> T:
    """Run ``operation`` and commit; re-run it from scratch after a lost CAS race."""
    for attempt in range(1, attempts + 1):
        try:
            result = await operation()
            await db.commit()
            return result
        except BalanceConflictError as exc:
            await db.rollback()
            logger.warning(
                "Balance conflict for account %s (attempt %s/%s)",
                exc.account_id,
                attempt,
                attempts,
            )
        except Exception:
            await db.rollback()
            raise
    raise StoreUnavailableError("Balance update conflicted repeatedly; retry the request.")


async def has_usage_since(db: AsyncSession, account_id: str, since: datetime) -> bool:
    result = await db.execute(
        select(LedgerEntry.id)
        .where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.action == LedgerAction.USE.value,
            LedgerEntry.created_at >= since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_ledger_entries(db: AsyncSession, account_id: str, *, limit: int = 30) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    return [
        {
            "id": entry.id,
            "action": entry.action,
            "amount": float(entry.amount or 0),
            "balance_after": float(entry.balance_after) if entry.balance_after is not None else None,
            "feature": entry.feature,
            "description": entry.description,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]


def _feature_label(feature: Optional[str]) -> Optional[str]:
    if not feature:
        return None
    spec = ENTITLEMENTS.features.get(feature)
    return spec.description if spec else feature
