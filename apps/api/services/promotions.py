"""Promo code redemption, subscription discounts and two-phase referrals."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.payment import PaymentRecord
from models.promo_code import PromoCode, PromoRedemption
from models.referral import Referral
from services.clock import add_months, as_utc, utcnow
from services.credits import (
    ZERO,
    Buckets,
    LedgerAction,
    LedgerMutation,
    apply_balances,
    credit,
    load_account,
    run_balance_transaction,
    to_decimal,
)
from services.entitlements import (
    PlanTier,
    daily_grant_amount,
    monthly_bonus_amount,
    parse_paid_plan,
    plan_price,
    plan_spec,
)
from services.errors import (
    AlreadyReferred,
    InvalidPromoCode,
    InvalidReferralCode,
    PromoAlreadyRedeemed,
    PromoExpired,
    PromoLimitReached,
    PromoNotApplicable,
    SelfReferral,
)

logger = logging.getLogger(__name__)

PERCENT_DISCOUNT = "percent_discount"
FIXED_DISCOUNT = "fixed_discount"
SUBSCRIPTION_DISCOUNT = "subscription_discount"
BONUS_CREDITS = "bonus_credits"
INSTANT_CREDITS = "instant_credits"
FREE_MONTH_TRIAL = "free_month_trial"

DISCOUNT_TYPES = frozenset({PERCENT_DISCOUNT, FIXED_DISCOUNT, SUBSCRIPTION_DISCOUNT})
# Claimed at redemption, applied when a subscription payment consumes the claim
DEFERRED_TYPES = DISCOUNT_TYPES | {BONUS_CREDITS}
PROMO_TYPES = DEFERRED_TYPES | {INSTANT_CREDITS, FREE_MONTH_TRIAL}


@dataclass(frozen=True)
class PriceQuote:
    plan: PlanTier
    base_price: Decimal
    discount: Decimal = ZERO
    bonus_credits: Decimal = ZERO
    promo_code: Optional[str] = None
    promo_type: Optional[str] = None

    @property
    def amount(self) -> Decimal:
        return self.base_price - self.discount

    def as_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.value,
            "base_price": float(self.base_price),
            "discount": float(self.discount),
            "amount": float(self.amount),
            "bonus_credits": float(self.bonus_credits),
            "promo_code": self.promo_code,
            "promo_type": self.promo_type,
        }


@dataclass(frozen=True)
class ReferralCompletion:
    referral_id: str
    referrer_id: str
    referred_id: str
    referrer_bonus: int
    referred_bonus: int
    referred: LedgerMutation


def normalize_code(code: Any) -> str:
    return str(code or "").strip().upper()


async def _load_promo(db: AsyncSession, code: str) -> PromoCode:
    normalized = normalize_code(code)
    if not normalized:
        raise InvalidPromoCode("Promo code is required.")
    result = await db.execute(
        select(PromoCode).where(PromoCode.code == normalized).execution_options(populate_existing=True)
    )
    promo = result.scalar_one_or_none()
    if promo is None or not promo.is_active:
        raise InvalidPromoCode("Invalid promo code.", code=normalized)
    return promo


def _check_expiry(promo: PromoCode, now: datetime) -> None:
    expires_at = as_utc(promo.expires_at)
    if expires_at is not None and expires_at < now:
        raise PromoExpired("Promo code has expired.", code=promo.code)


def _check_usage(promo: PromoCode) -> None:
    if int(promo.used_count or 0) >= int(promo.max_uses or 0):
        raise PromoLimitReached(
            "Promo code usage limit reached.",
            code=promo.code,
            max_uses=int(promo.max_uses or 0),
        )


async def _find_redemption(db: AsyncSession, promo_id: str, account_id: str) -> Optional[PromoRedemption]:
    result = await db.execute(
        select(PromoRedemption)
        .where(PromoRedemption.promo_id == promo_id, PromoRedemption.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def claim_promo(db: AsyncSession, promo: PromoCode, account_id: str, now: datetime) -> PromoRedemption:
    """Take one use of ``promo`` for ``account_id`` inside the caller's transaction.

    The counter only moves while ``used_count < max_uses`` holds in the store,
    so racing claims at the boundary cannot overshoot the cap.
    """
    result = await db.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo.id,
            PromoCode.is_active.is_(True),
            PromoCode.used_count < PromoCode.max_uses,
        )
        .values(used_count=PromoCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PromoLimitReached("Promo code usage limit reached.", code=promo.code)

    redemption = PromoRedemption(
        id=str(uuid.uuid4()),
        promo_id=promo.id,
        account_id=account_id,
        created_at=now,
    )
    db.add(redemption)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise PromoAlreadyRedeemed("Promo code already redeemed by this account.", code=promo.code) from exc
    return redemption


def _discount_for(promo: PromoCode, base_price: Decimal) -> Decimal:
    value = to_decimal(promo.value)
    if promo.type in (PERCENT_DISCOUNT, SUBSCRIPTION_DISCOUNT):
        percent = min(max(value, ZERO), Decimal("100"))
        discount = (base_price * percent / Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    else:
        discount = max(value, ZERO)
    return min(discount, base_price)


def _promo_hint(promo: PromoCode) -> Dict[str, Any]:
    value = float(to_decimal(promo.value))
    if promo.type == BONUS_CREDITS:
        return {
            "discount_type": "bonus",
            "bonus_lunas": value,
            "message": f"{value:g} bonus lunas will be added after your subscription payment.",
        }
    if promo.type == FIXED_DISCOUNT:
        return {
            "discount_type": "fixed",
            "discount_amount": value,
            "message": f"{value:,.0f} KRW off your next subscription payment.",
        }
    hint = {
        "discount_type": "percent",
        "discount_percent": value,
        "message": f"{value:g}% off your next subscription payment.",
    }
    if promo.type == SUBSCRIPTION_DISCOUNT and promo.target_plan:
        hint["target_plan"] = promo.target_plan
    return hint


async def quote_subscription_price(
    db: AsyncSession,
    account_id: str,
    plan: Any,
    promo_code: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> PriceQuote:
    """Expected charge for ``plan`` after an optional promo; performs no writes."""
    tier = parse_paid_plan(plan)
    base_price = Decimal(plan_price(tier))
    if not normalize_code(promo_code):
        return PriceQuote(plan=tier, base_price=base_price)

    now = now or utcnow()
    promo = await _load_promo(db, promo_code)
    if promo.type not in DEFERRED_TYPES:
        raise PromoNotApplicable("Promo code cannot be applied to a subscription payment.", code=promo.code)
    if promo.type == SUBSCRIPTION_DISCOUNT and promo.target_plan and promo.target_plan != tier.value:
        raise PromoNotApplicable(
            f"Promo code only applies to the {promo.target_plan} plan.",
            code=promo.code,
            target_plan=promo.target_plan,
        )

    _check_expiry(promo, now)
    redemption = await _find_redemption(db, promo.id, account_id)
    if redemption is not None and redemption.consumed_at is not None:
        raise PromoAlreadyRedeemed("Promo code already redeemed by this account.", code=promo.code)
    if redemption is None:
        _check_usage(promo)

    if promo.type == BONUS_CREDITS:
        return PriceQuote(
            plan=tier,
            base_price=base_price,
            bonus_credits=max(to_decimal(promo.value), ZERO),
            promo_code=promo.code,
            promo_type=promo.type,
        )
    return PriceQuote(
        plan=tier,
        base_price=base_price,
        discount=_discount_for(promo, base_price),
        promo_code=promo.code,
        promo_type=promo.type,
    )


async def consume_subscription_promo(
    db: AsyncSession,
    account_id: str,
    quote: PriceQuote,
    payment_id: str,
    now: datetime,
) -> Decimal:
    """Mark the quoted promo as spent by ``payment_id``; claims it first when needed.

    Returns bonus lunas owed to the promotional bucket.
    """
    if not quote.promo_code:
        return ZERO

    promo = await _load_promo(db, quote.promo_code)
    redemption = await _find_redemption(db, promo.id, account_id)
    if redemption is None:
        redemption = await claim_promo(db, promo, account_id, now)

    result = await db.execute(
        update(PromoRedemption)
        .where(PromoRedemption.id == redemption.id, PromoRedemption.consumed_at.is_(None))
        .values(consumed_at=now, payment_id=payment_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PromoAlreadyRedeemed("Promo code already redeemed by this account.", code=promo.code)
    return quote.bonus_credits


async def _activate_trial(db: AsyncSession, account_id: str, promo: PromoCode, now: datetime) -> LedgerMutation:
    account = await load_account(db, account_id)
    if account.plan != PlanTier.FREE.value:
        raise PromoNotApplicable("Free month trials are only available on the free plan.", code=promo.code)

    tier = parse_paid_plan(promo.target_plan or PlanTier.TIER1.value)
    before = Buckets.from_account(account)
    after = before.with_bucket("daily", daily_grant_amount(tier)).with_bucket(
        "monthly_bonus", before.monthly_bonus + monthly_bonus_amount(tier)
    )
    return await apply_balances(
        db,
        account,
        after,
        action=LedgerAction.PROMO,
        description=f"Promo {promo.code}: one free month of {plan_spec(tier).label}",
        reference_type="promo",
        reference_id=promo.code,
        now=now,
        plan=tier.value,
        plan_started_at=now,
        plan_expires_at=add_months(now, 1),
        auto_renew=False,
        billing_key=None,
        last_daily_grant_date=now.date(),
        monthly_bonus_granted_on=now.date(),
        last_renewal_attempt_on=None,
    )


async def redeem_promo_code(
    db: AsyncSession,
    account_id: str,
    code: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Validate and redeem ``code``; the usage claim and its effect commit together."""
    now = now or utcnow()
    promo = await _load_promo(db, code)
    _check_expiry(promo, now)
    _check_usage(promo)
    if promo.type not in PROMO_TYPES:
        raise PromoNotApplicable(f"Unsupported promo type '{promo.type}'.", code=promo.code)
    if await _find_redemption(db, promo.id, account_id) is not None:
        raise PromoAlreadyRedeemed("Promo code already redeemed by this account.", code=promo.code)
    if promo.type == FREE_MONTH_TRIAL:
        account = await load_account(db, account_id, for_update=False)
        if account.plan != PlanTier.FREE.value:
            raise PromoNotApplicable("Free month trials are only available on the free plan.", code=promo.code)

    promo_id = promo.id
    promo_code = promo.code
    promo_type = promo.type
    promo_value = to_decimal(promo.value)

    async def operation() -> Dict[str, Any]:
        current = await _load_promo(db, promo_code)
        await claim_promo(db, current, account_id, now)
        result: Dict[str, Any] = {
            "success": True,
            "code": promo_code,
            "type": promo_type,
            "value": float(promo_value),
            "applied": False,
        }

        if promo_type in DEFERRED_TYPES:
            result.update(_promo_hint(current))
            result["balances"] = (await _balances(db, account_id)).as_dict()
            return result

        if promo_type == INSTANT_CREDITS:
            mutation = await credit(
                db,
                account_id,
                "promotional",
                promo_value,
                LedgerAction.PROMO,
                f"Promo code {promo_code}",
                reference_type="promo",
                reference_id=promo_id,
                now=now,
            )
            result["lunas_granted"] = float(promo_value)
            result["message"] = f"{float(promo_value):g} lunas added."
        else:
            mutation = await _activate_trial(db, account_id, current, now)
            result["plan"] = mutation.plan
            result["plan_expires_at"] = add_months(now, 1).isoformat()
            result["lunas_granted"] = float(mutation.amount)
            result["message"] = f"One free month of {plan_spec(mutation.plan).label} started."

        result["applied"] = True
        result["balances"] = mutation.buckets.as_dict()
        return result

    outcome = await run_balance_transaction(db, operation)
    logger.info("Promo %s (%s) redeemed by %s", promo_code, promo_type, account_id)
    return outcome


async def _balances(db: AsyncSession, account_id: str) -> Buckets:
    return Buckets.from_account(await load_account(db, account_id, for_update=False))


async def register_referral(
    db: AsyncSession,
    referred_id: str,
    code: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Create a pending referral from ``referred_id`` to the owner of ``code``."""
    now = now or utcnow()
    normalized = normalize_code(code)
    if not normalized:
        raise InvalidReferralCode("Referral code is required.")

    result = await db.execute(select(Account.id).where(Account.referral_code == normalized))
    referrer_id = result.scalar_one_or_none()
    if referrer_id is None:
        raise InvalidReferralCode("Invalid referral code.", code=normalized)
    if referrer_id == referred_id:
        raise SelfReferral("You cannot use your own referral code.")

    existing = await db.execute(select(Referral.id).where(Referral.referred_id == referred_id))
    if existing.scalar_one_or_none() is not None:
        raise AlreadyReferred("A referral code is already registered for this account.")

    bonus = int(settings.REFERRAL_BONUS_LUNAS)

    async def operation() -> Referral:
        referral = Referral(
            id=str(uuid.uuid4()),
            referrer_id=referrer_id,
            referred_id=referred_id,
            referrer_bonus=bonus,
            referred_bonus=bonus,
            status="pending",
            created_at=now,
        )
        db.add(referral)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise AlreadyReferred("A referral code is already registered for this account.") from exc
        return referral

    referral = await run_balance_transaction(db, operation)
    return {
        "success": True,
        "status": referral.status,
        "referrer_bonus": referral.referrer_bonus,
        "referred_bonus": referral.referred_bonus,
        "message": f"Referral registered. Both accounts receive {bonus} lunas after the first subscription payment.",
    }


async def complete_referral(
    db: AsyncSession,
    referred_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[ReferralCompletion]:
    """Pay out a pending referral inside the caller's transaction.

    Returns None when there is nothing pending, including when a concurrent
    caller already flipped the referral.
    """
    now = now or utcnow()
    result = await db.execute(
        select(Referral)
        .where(Referral.referred_id == referred_id, Referral.status == "pending")
        .execution_options(populate_existing=True)
    )
    referral = result.scalar_one_or_none()
    if referral is None:
        return None

    flipped = await db.execute(
        update(Referral)
        .where(Referral.id == referral.id, Referral.status == "pending")
        .values(status="completed", completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        return None

    await credit(
        db,
        referral.referrer_id,
        "promotional",
        referral.referrer_bonus,
        LedgerAction.REFERRAL_BONUS,
        f"Referral bonus: invited account subscribed (+{referral.referrer_bonus})",
        reference_type="referral",
        reference_id=referral.id,
        now=now,
    )
    referred = await credit(
        db,
        referred_id,
        "promotional",
        referral.referred_bonus,
        LedgerAction.REFERRAL_BONUS,
        f"Referral bonus: welcome gift (+{referral.referred_bonus})",
        reference_type="referral",
        reference_id=referral.id,
        now=now,
    )
    logger.info("Referral %s completed: %s -> %s", referral.id, referral.referrer_id, referred_id)
    return ReferralCompletion(
        referral_id=referral.id,
        referrer_id=referral.referrer_id,
        referred_id=referred_id,
        referrer_bonus=int(referral.referrer_bonus),
        referred_bonus=int(referral.referred_bonus),
        referred=referred,
    )


async def complete_referral_request(
    db: AsyncSession,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Client-triggered completion; only pays out once the account has paid for a subscription."""
    now = now or utcnow()
    pending = await db.execute(
        select(Referral.id).where(Referral.referred_id == account_id, Referral.status == "pending")
    )
    if pending.scalar_one_or_none() is None:
        return {"success": True, "has_referral": False, "completed": False}

    paid = await db.execute(
        select(PaymentRecord.id)
        .where(
            PaymentRecord.account_id == account_id,
            PaymentRecord.kind == "subscription",
            PaymentRecord.status == "paid",
        )
        .limit(1)
    )
    if paid.scalar_one_or_none() is None:
        return {"success": True, "has_referral": True, "completed": False, "reason": "awaiting_first_payment"}

    completion = await run_balance_transaction(db, lambda: complete_referral(db, account_id, now=now))
    if completion is None:
        return {"success": True, "has_referral": True, "completed": False}
    return {
        "success": True,
        "has_referral": True,
        "completed": True,
        "referrer_bonus": completion.referrer_bonus,
        "referred_bonus": completion.referred_bonus,
        "balances": completion.referred.buckets.as_dict(),
    }
