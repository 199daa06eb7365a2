"""Account provisioning, balance inquiry, registered devices and feature use."""

from __future__ import annotations

import logging
import math
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.device import Device
from services.clock import as_utc, utcnow
from services.credits import (
    ZERO,
    Buckets,
    LedgerAction,
    append_entry,
    debit,
    load_account,
    run_balance_transaction,
)
from services.entitlements import (
    ENTITLEMENTS,
    PAID_PLANS,
    PlanTier,
    check_access,
    daily_grant_amount,
    feature_cost,
    is_unlimited,
    parse_plan,
    plan_spec,
)
from services.grants import ensure_daily_grant

logger = logging.getLogger(__name__)

REFERRAL_CODE_PREFIX = "LW"
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 6
MAX_LISTED_DEVICES = 5


def generate_referral_code() -> str:
    suffix = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
    return f"{REFERRAL_CODE_PREFIX}{suffix}"


async def _unused_referral_code(db: AsyncSession, attempts: int = 8) -> str:
    for _ in range(attempts):
        code = generate_referral_code()
        result = await db.execute(select(Account.id).where(Account.referral_code == code))
        if result.scalar_one_or_none() is None:
            return code
    raise RuntimeError("Could not allocate a unique referral code")


async def get_or_create_account(
    db: AsyncSession,
    account_id: str,
    email: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Account:
    """Return the account, provisioning it on first contact.

    New accounts start on the free plan with today's daily lunas and the
    signup bonus, each recorded in the ledger.
    """
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is not None:
        return account

    now = now or utcnow()
    daily = Decimal(daily_grant_amount(PlanTier.FREE))
    signup_bonus = Decimal(settings.SIGNUP_BONUS_LUNAS)
    account = Account(
        id=account_id,
        email=email,
        plan=PlanTier.FREE.value,
        auto_renew=False,
        daily_lunas=daily,
        monthly_bonus_lunas=ZERO,
        promotional_lunas=signup_bonus,
        purchased_lunas=ZERO,
        balance_version=0,
        last_daily_grant_date=now.date(),
        referral_code=await _unused_referral_code(db),
        device_limit=settings.DEFAULT_DEVICE_LIMIT,
        created_at=now,
        updated_at=now,
    )
    db.add(account)
    try:
        await db.flush()
        await append_entry(
            db,
            account_id=account_id,
            action=LedgerAction.DAILY,
            amount=daily,
            balance_after=daily,
            description=f"Welcome: daily lunas (Free {daily})",
            now=now,
        )
        if signup_bonus > 0:
            await append_entry(
                db,
                account_id=account_id,
                action=LedgerAction.SIGNUP_BONUS,
                amount=signup_bonus,
                balance_after=daily + signup_bonus,
                description=f"Signup bonus (+{signup_bonus})",
                now=now,
            )
        await db.commit()
    except IntegrityError:
        # Lost a provisioning race; the other request's row wins.
        await db.rollback()
        return await load_account(db, account_id, for_update=False)

    logger.info("Provisioned account %s", account_id)
    return account


def plan_status(account: Account, now: datetime) -> str:
    expires_at = as_utc(account.plan_expires_at)
    if parse_plan(account.plan) not in PAID_PLANS or expires_at is None:
        return "active"
    days_left = math.ceil((expires_at - now).total_seconds() / 86400)
    if days_left <= 0:
        return "expired"
    if days_left <= settings.EXPIRING_SOON_DAYS:
        return "expiring_soon"
    return "active"


def account_snapshot(account: Account, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    spec = plan_spec(account.plan)
    buckets = Buckets.from_account(account)
    started_at = as_utc(account.plan_started_at)
    expires_at = as_utc(account.plan_expires_at)
    return {
        "id": account.id,
        "email": account.email,
        "plan": spec.tier.value,
        "plan_label": spec.label,
        "plan_status": plan_status(account, now),
        "plan_started_at": started_at.isoformat() if started_at else None,
        "plan_expires_at": expires_at.isoformat() if expires_at else None,
        "auto_renew": bool(account.auto_renew),
        "has_billing_key": bool(account.billing_key),
        "unlimited": spec.unlimited,
        "balances": buckets.as_dict(),
        "lunas_total": float(buckets.total),
        "daily_lunas_granted_at": account.last_daily_grant_date.isoformat() if account.last_daily_grant_date else None,
        "referral_code": account.referral_code,
        "device_limit": int(account.device_limit or settings.DEFAULT_DEVICE_LIMIT),
        "entitlement_version": ENTITLEMENTS.version,
    }


async def register_device(
    db: AsyncSession,
    account_id: str,
    device_id: str,
    device_name: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Device:
    """Record or refresh a client installation; a known device moves to the calling account."""
    now = now or utcnow()
    result = await db.execute(select(Device).where(Device.device_id == device_id))
    device = result.scalar_one_or_none()
    if device is None:
        device = Device(
            account_id=account_id,
            device_id=device_id,
            device_name=device_name or "Unknown Device",
            last_active_at=now,
            created_at=now,
        )
        db.add(device)
    else:
        device.account_id = account_id
        device.last_active_at = now
        if device_name:
            device.device_name = device_name
    await db.flush()
    return device


async def list_devices(db: AsyncSession, account_id: str, limit: int = MAX_LISTED_DEVICES) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Device)
        .where(Device.account_id == account_id)
        .order_by(Device.last_active_at.desc())
        .limit(limit)
    )
    return [
        {
            "device_id": device.device_id,
            "device_name": device.device_name,
            "last_active_at": as_utc(device.last_active_at).isoformat() if device.last_active_at else None,
        }
        for device in result.scalars().all()
    ]


async def count_devices(db: AsyncSession, account_id: str) -> int:
    result = await db.execute(select(func.count(Device.id)).where(Device.account_id == account_id))
    return int(result.scalar() or 0)


async def remove_device(db: AsyncSession, account_id: str, device_id: str) -> bool:
    result = await db.execute(
        delete(Device).where(Device.account_id == account_id, Device.device_id == device_id)
    )
    await db.commit()
    return result.rowcount > 0


async def get_account_overview(
    db: AsyncSession,
    account_id: str,
    *,
    email: Optional[str] = None,
    device_id: Optional[str] = None,
    device_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Balance/plan inquiry: provisions, applies today's grant and tracks the device."""
    now = now or utcnow()
    await get_or_create_account(db, account_id, email, now=now)
    await run_balance_transaction(db, lambda: ensure_daily_grant(db, account_id, now=now))

    device_payload = None
    device_warning = None
    if device_id:
        device = await register_device(db, account_id, device_id, device_name, now=now)
        await db.commit()
        device_payload = {"device_id": device.device_id, "device_name": device.device_name}

    account = await load_account(db, account_id, for_update=False)
    if device_id and parse_plan(account.plan) in PAID_PLANS:
        if await count_devices(db, account_id) > int(account.device_limit or settings.DEFAULT_DEVICE_LIMIT):
            device_warning = "device_limit_exceeded"

    return {
        "success": True,
        "profile": account_snapshot(account, now),
        "device": device_payload,
        "devices": await list_devices(db, account_id),
        "device_warning": device_warning,
    }


def warning_level(before_total: Decimal, after_total: Decimal) -> Optional[str]:
    """Low-balance warning relative to the balance held before the debit."""
    if after_total <= 0:
        return "lunas_depleted"
    if after_total <= before_total * Decimal("0.1"):
        return "lunas_low_10"
    if after_total <= before_total * Decimal("0.3"):
        return "lunas_low_30"
    return None


async def use_feature(
    db: AsyncSession,
    account_id: str,
    feature: str,
    *,
    device_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Gate, price and debit one feature use."""
    now = now or utcnow()
    cost = feature_cost(feature)
    await run_balance_transaction(db, lambda: ensure_daily_grant(db, account_id, now=now))

    async def operation():
        account = await load_account(db, account_id)
        check_access(account.plan, feature)
        mutation = await debit(db, account_id, cost, feature, now=now, account=account)
        if device_id:
            result = await db.execute(
                select(Device).where(Device.device_id == device_id, Device.account_id == account_id)
            )
            device = result.scalar_one_or_none()
            if device is not None:
                device.last_active_at = now
                await db.flush()
        return mutation

    mutation = await run_balance_transaction(db, operation)
    unlimited = is_unlimited(mutation.plan)
    return {
        "success": True,
        "feature": feature,
        "cost": float(cost),
        "charged": float(abs(mutation.amount)),
        "plan": mutation.plan,
        "unlimited": unlimited,
        "lunas_remaining": float(mutation.total),
        "balances": mutation.buckets.as_dict(),
        "warning": None if unlimited else warning_level(mutation.before.total, mutation.total),
        "watermark": parse_plan(mutation.plan) == PlanTier.FREE,
    }
