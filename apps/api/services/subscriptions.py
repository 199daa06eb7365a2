"""Subscription lifecycle: start, renewal, cancel, refund and payment confirmation.

Payment state only moves on data re-fetched from the provider. Credit side
effects for a payment are applied at most once, gated by ``fulfilled_at``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment import PaymentRecord
from services.clock import add_months, as_utc, next_cycle_end, utcnow
from services.credits import (
    ZERO,
    Buckets,
    LedgerAction,
    LedgerMutation,
    append_entry,
    apply_balances,
    credit,
    has_usage_since,
    load_account,
    run_balance_transaction,
    to_decimal,
    write_account,
)
from services.crypto import decrypt_billing_key, encrypt_billing_key
from services.entitlements import (
    PAID_PLANS,
    PlanTier,
    daily_grant_amount,
    monthly_bonus_amount,
    parse_paid_plan,
    parse_plan,
    plan_price,
    plan_spec,
)
from services.errors import (
    NoActiveSubscription,
    NoRefundablePayment,
    PaymentProviderError,
    PaymentVerificationFailed,
    RefundWindowExpired,
    UsageDetected,
)
from services.payment_provider import PaymentProvider, VerifiedPayment
from services.promotions import PriceQuote, complete_referral, consume_subscription_promo, quote_subscription_price

logger = logging.getLogger(__name__)

SUBSCRIPTION = "subscription"
PURCHASE = "purchase"
RENEWAL_PAY_METHOD = "billing_key"


@dataclass(frozen=True)
class SubscriptionResult:
    account_id: str
    plan: str
    plan_expires_at: Optional[datetime]
    payment_id: str
    amount_paid: Decimal
    granted_lunas: Decimal
    buckets: Buckets
    already_processed: bool = False
    referral_completed: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "plan": self.plan,
            "plan_label": plan_spec(self.plan).label,
            "plan_expires_at": self.plan_expires_at.isoformat() if self.plan_expires_at else None,
            "payment_id": self.payment_id,
            "amount_paid": float(self.amount_paid),
            "granted_lunas": float(self.granted_lunas),
            "already_processed": self.already_processed,
            "referral_completed": self.referral_completed,
            "balances": self.buckets.as_dict(),
        }


async def find_payment(db: AsyncSession, external_payment_id: str) -> Optional[PaymentRecord]:
    result = await db.execute(
        select(PaymentRecord)
        .where(PaymentRecord.external_payment_id == external_payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _upsert_payment(
    db: AsyncSession,
    *,
    external_payment_id: str,
    status: str,
    now: datetime,
    account_id: Optional[str] = None,
    kind: Optional[str] = None,
    plan: Optional[str] = None,
    amount: Optional[Decimal] = None,
    credits: Optional[int] = None,
    merchant_uid: Optional[str] = None,
    pay_method: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> PaymentRecord:
    """Create the record if this is the first we hear of it, else fill in what is missing."""
    record = await find_payment(db, external_payment_id)
    if record is None:
        record = PaymentRecord(
            id=str(uuid.uuid4()),
            external_payment_id=external_payment_id,
            account_id=account_id,
            kind=kind or SUBSCRIPTION,
            plan=plan,
            amount=amount if amount is not None else ZERO,
            credits=credits,
            status=status,
            merchant_uid=merchant_uid,
            pay_method=pay_method,
            paid_at=paid_at,
            created_at=now,
            updated_at=now,
        )
        db.add(record)
        await db.flush()
        return record

    if record.account_id is None and account_id:
        record.account_id = account_id
    if kind and not record.fulfilled_at:
        record.kind = kind
    if plan and not record.plan:
        record.plan = plan
    if amount is not None:
        record.amount = amount
    if credits is not None and record.credits is None:
        record.credits = credits
    record.merchant_uid = record.merchant_uid or merchant_uid
    record.pay_method = record.pay_method or pay_method
    record.paid_at = record.paid_at or paid_at
    record.status = status
    record.updated_at = now
    await db.flush()
    return record


async def _claim_fulfilment(db: AsyncSession, record_id: str, now: datetime) -> bool:
    result = await db.execute(
        update(PaymentRecord)
        .where(PaymentRecord.id == record_id, PaymentRecord.fulfilled_at.is_(None))
        .values(fulfilled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _set_payment_fields(db: AsyncSession, record_id: str, now: datetime, **values: Any) -> None:
    await db.execute(
        update(PaymentRecord)
        .where(PaymentRecord.id == record_id)
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )


def _check_verified(verified: VerifiedPayment, expected_amount: Decimal) -> None:
    if verified.status != "paid":
        raise PaymentVerificationFailed(
            "Payment is not completed at the provider.",
            payment_id=verified.payment_id,
            status=verified.status,
        )
    if to_decimal(verified.amount) != expected_amount:
        raise PaymentVerificationFailed(
            "Paid amount does not match the plan price.",
            payment_id=verified.payment_id,
            expected_amount=expected_amount,
            paid_amount=to_decimal(verified.amount),
        )


async def _activate_plan(
    db: AsyncSession,
    *,
    account_id: str,
    quote: PriceQuote,
    verified: VerifiedPayment,
    billing_key: Optional[str],
    merchant_uid: Optional[str],
    now: datetime,
) -> Optional[SubscriptionResult]:
    """Apply a verified subscription payment; None when another caller already did."""
    record = await _upsert_payment(
        db,
        external_payment_id=verified.payment_id,
        status="paid",
        now=now,
        account_id=account_id,
        kind=SUBSCRIPTION,
        plan=quote.plan.value,
        amount=to_decimal(verified.amount),
        merchant_uid=merchant_uid or verified.merchant_uid,
        pay_method=verified.pay_method,
        paid_at=verified.paid_at or now,
    )
    if record.account_id != account_id:
        raise PaymentVerificationFailed("Payment belongs to another account.", payment_id=verified.payment_id)
    if not await _claim_fulfilment(db, record.id, now):
        return None

    bonus_credits = await consume_subscription_promo(db, account_id, quote, verified.payment_id, now)

    tier = quote.plan
    spec = plan_spec(tier)
    account = await load_account(db, account_id)
    before = Buckets.from_account(account)
    after = before.with_bucket("daily", daily_grant_amount(tier)).with_bucket(
        "monthly_bonus", before.monthly_bonus + monthly_bonus_amount(tier)
    )
    expires_at = add_months(now, 1)
    mutation = await apply_balances(
        db,
        account,
        after,
        action=LedgerAction.SUBSCRIPTION,
        description=f"{spec.label} subscription started ({int(quote.amount):,} KRW)",
        reference_type="payment",
        reference_id=verified.payment_id,
        now=now,
        plan=tier.value,
        plan_started_at=now,
        plan_expires_at=expires_at,
        auto_renew=bool(billing_key),
        billing_key=encrypt_billing_key(billing_key),
        last_daily_grant_date=now.date(),
        monthly_bonus_granted_on=now.date(),
        last_renewal_attempt_on=None,
    )
    granted = mutation.amount

    if bonus_credits > 0:
        mutation = await credit(
            db,
            account_id,
            "promotional",
            bonus_credits,
            LedgerAction.PROMO,
            f"Promo {quote.promo_code}: subscription bonus",
            reference_type="promo",
            reference_id=quote.promo_code,
            now=now,
        )
        granted += bonus_credits

    referral = await complete_referral(db, account_id, now=now)
    if referral is not None:
        mutation = referral.referred
        granted += Decimal(referral.referred_bonus)

    return SubscriptionResult(
        account_id=account_id,
        plan=tier.value,
        plan_expires_at=expires_at,
        payment_id=verified.payment_id,
        amount_paid=to_decimal(verified.amount),
        granted_lunas=granted,
        buckets=mutation.buckets,
        referral_completed=referral is not None,
    )


async def _already_processed(db: AsyncSession, account_id: str, record: PaymentRecord) -> SubscriptionResult:
    account = await load_account(db, account_id, for_update=False)
    return SubscriptionResult(
        account_id=account_id,
        plan=account.plan,
        plan_expires_at=as_utc(account.plan_expires_at),
        payment_id=record.external_payment_id,
        amount_paid=to_decimal(record.amount),
        granted_lunas=ZERO,
        buckets=Buckets.from_account(account),
        already_processed=True,
    )


async def start_subscription(
    db: AsyncSession,
    provider: PaymentProvider,
    account_id: str,
    plan: Any,
    payment_id: str,
    *,
    merchant_uid: Optional[str] = None,
    billing_key: Optional[str] = None,
    promo_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SubscriptionResult:
    """Activate ``plan`` for a payment the provider confirms at the quoted price.

    Replaying the same payment id returns the earlier outcome without
    granting anything again.
    """
    now = now or utcnow()
    tier = parse_paid_plan(plan)
    payment_id = str(payment_id or "").strip()
    if not payment_id:
        raise PaymentVerificationFailed("payment_id is required.")

    existing = await find_payment(db, payment_id)
    if existing is not None and existing.fulfilled_at is not None:
        if existing.account_id != account_id:
            raise PaymentVerificationFailed("Payment belongs to another account.", payment_id=payment_id)
        return await _already_processed(db, account_id, existing)

    quote = await quote_subscription_price(db, account_id, tier, promo_code, now=now)
    verified = await provider.verify_payment(payment_id)
    _check_verified(verified, quote.amount)

    result = await run_balance_transaction(
        db,
        lambda: _activate_plan(
            db,
            account_id=account_id,
            quote=quote,
            verified=verified,
            billing_key=billing_key,
            merchant_uid=merchant_uid,
            now=now,
        ),
    )
    if result is None:
        record = await find_payment(db, payment_id)
        return await _already_processed(db, account_id, record)

    logger.info(
        "Subscription %s started for %s (payment %s, %s KRW)",
        result.plan,
        account_id,
        payment_id,
        quote.amount,
    )
    return result


async def _open_renewal(db: AsyncSession, account_id: str) -> Optional[PaymentRecord]:
    """Latest billing-key charge whose result never reached the account."""
    result = await db.execute(
        select(PaymentRecord)
        .where(
            PaymentRecord.account_id == account_id,
            PaymentRecord.pay_method == RENEWAL_PAY_METHOD,
            PaymentRecord.status.in_(("pending", "paid")),
            PaymentRecord.fulfilled_at.is_(None),
        )
        .order_by(PaymentRecord.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _apply_renewal(db: AsyncSession, account_id: str, record_id: str, now: datetime) -> bool:
    """Extend the plan by one cycle for a paid renewal record; False when already applied."""
    account = await load_account(db, account_id)
    if not await _claim_fulfilment(db, record_id, now):
        return False
    result = await db.execute(
        select(PaymentRecord).where(PaymentRecord.id == record_id).execution_options(populate_existing=True)
    )
    record = result.scalar_one()
    tier = parse_plan(record.plan or account.plan)
    current_expiry = as_utc(account.plan_expires_at)
    anchor = as_utc(account.plan_started_at) or current_expiry or now
    new_expiry = next_cycle_end(anchor, current_expiry)
    await apply_balances(
        db,
        account,
        Buckets.from_account(account),
        action=LedgerAction.AUTO_RENEWAL,
        amount=ZERO,
        description=f"{plan_spec(tier).label} renewed until {new_expiry:%Y-%m-%d} ({int(record.amount):,} KRW)",
        reference_type="payment",
        reference_id=record.external_payment_id,
        now=now,
        plan_expires_at=new_expiry,
    )
    return True


async def renew_subscription(
    db: AsyncSession,
    provider: PaymentProvider,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Charge the stored billing key when expiry is near; at most one attempt per day.

    Each attempt is recorded as a pending payment keyed on its order reference
    before the key is charged. A charge that was taken but never applied is
    applied on the next run instead of charging again, and one whose outcome
    is unknown blocks further charges until it is reconciled.

    Returns ``"succeeded"``, ``"failed"`` or None when no renewal was due.
    """
    now = now or utcnow()
    today = now.date()
    window = timedelta(days=settings.AUTO_RENEW_WINDOW_DAYS)

    async def claim_attempt() -> Optional[Dict[str, Any]]:
        account = await load_account(db, account_id)
        tier = parse_plan(account.plan)
        if tier not in PAID_PLANS:
            return None
        open_record = await _open_renewal(db, account_id)
        if open_record is not None:
            return {"record_id": open_record.id, "order_ref": open_record.merchant_uid, "status": open_record.status}

        expires_at = as_utc(account.plan_expires_at)
        if not account.billing_key or not account.auto_renew:
            return None
        if expires_at is None or expires_at > now + window:
            return None
        if account.last_renewal_attempt_on == today:
            return None

        order_ref = f"renew_{account_id[:8]}_{today:%Y%m%d}_{uuid.uuid4().hex[:6]}"
        record = PaymentRecord(
            id=str(uuid.uuid4()),
            external_payment_id=order_ref,
            merchant_uid=order_ref,
            account_id=account_id,
            kind=SUBSCRIPTION,
            plan=tier.value,
            amount=Decimal(plan_price(tier)),
            status="pending",
            pay_method=RENEWAL_PAY_METHOD,
            created_at=now,
            updated_at=now,
        )
        db.add(record)
        await db.flush()
        await write_account(db, account, now=now, last_renewal_attempt_on=today)
        return {
            "record_id": record.id,
            "order_ref": order_ref,
            "status": "new",
            "plan": tier,
            "billing_key": account.billing_key,
        }

    attempt = await run_balance_transaction(db, claim_attempt)
    if attempt is None:
        return None

    record_id = attempt["record_id"]
    order_ref = attempt["order_ref"]
    if attempt["status"] == "paid":
        logger.warning("Applying earlier renewal charge %s for %s", order_ref, account_id)
        await run_balance_transaction(db, lambda: _apply_renewal(db, account_id, record_id, now))
        return "succeeded"
    if attempt["status"] == "pending":
        logger.error(
            "Renewal order %s for %s has no recorded charge outcome; not charging again until reconciled",
            order_ref,
            account_id,
        )
        return "failed"

    tier = attempt["plan"]
    amount = Decimal(plan_price(tier))
    failure_reason: Optional[str] = None
    charge = None
    try:
        charge = await provider.charge_by_billing_key(
            billing_key=decrypt_billing_key(attempt["billing_key"]),
            amount=amount,
            order_ref=order_ref,
            name=f"LunaWave {plan_spec(tier).label} renewal",
        )
        if not charge.success:
            failure_reason = charge.failure_reason or "charge declined"
    except PaymentProviderError as exc:
        failure_reason = exc.message

    if failure_reason is not None:
        async def record_failure() -> None:
            account = await load_account(db, account_id, for_update=False)
            await _set_payment_fields(db, record_id, now, status="failed")
            await append_entry(
                db,
                account_id=account_id,
                action=LedgerAction.RENEWAL_FAILED,
                amount=ZERO,
                balance_after=Buckets.from_account(account).total,
                description=f"Auto renewal failed: {failure_reason}"[:500],
                reference_type="order",
                reference_id=order_ref,
                now=now,
            )

        await run_balance_transaction(db, record_failure)
        logger.warning("Renewal charge failed for %s: %s", account_id, failure_reason)
        return "failed"

    async def record_charge() -> None:
        await _set_payment_fields(
            db,
            record_id,
            now,
            external_payment_id=charge.payment_id or order_ref,
            status="paid",
            amount=charge.amount,
            paid_at=charge.paid_at or now,
        )

    try:
        await run_balance_transaction(db, record_charge)
        await run_balance_transaction(db, lambda: _apply_renewal(db, account_id, record_id, now))
    except Exception:
        logger.error(
            "Renewal charge %s (order %s) for %s was taken but not applied",
            charge.payment_id,
            order_ref,
            account_id,
        )
        raise
    logger.info("Renewed %s for %s (payment %s)", tier.value, account_id, charge.payment_id)
    return "succeeded"


async def _release_billing_key(provider: PaymentProvider, encrypted_key: Optional[str], account_id: str) -> None:
    billing_key = decrypt_billing_key(encrypted_key)
    if not billing_key:
        return
    try:
        await provider.delete_billing_key(billing_key)
    except PaymentProviderError as exc:
        logger.warning("Billing key deletion failed for %s: %s", account_id, exc.message)


async def cancel_subscription(
    db: AsyncSession,
    provider: PaymentProvider,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Stop auto-renewal; the plan keeps running until its expiry."""
    now = now or utcnow()
    account = await load_account(db, account_id, for_update=False)
    if not account.billing_key and not account.auto_renew:
        raise NoActiveSubscription("No active recurring subscription to cancel.")
    encrypted_key = account.billing_key

    async def operation() -> LedgerMutation:
        current = await load_account(db, account_id)
        return await apply_balances(
            db,
            current,
            Buckets.from_account(current),
            action=LedgerAction.CANCEL,
            amount=ZERO,
            description=f"Auto renewal cancelled; {plan_spec(current.plan).label} stays active until expiry",
            now=now,
            billing_key=None,
            auto_renew=False,
        )

    mutation = await run_balance_transaction(db, operation)
    await _release_billing_key(provider, encrypted_key, account_id)

    account = await load_account(db, account_id, for_update=False)
    expires_at = as_utc(account.plan_expires_at)
    logger.info("Subscription cancelled for %s, plan %s runs until %s", account_id, account.plan, expires_at)
    return {
        "success": True,
        "plan": account.plan,
        "plan_expires_at": expires_at.isoformat() if expires_at else None,
        "auto_renew": False,
        "balances": mutation.buckets.as_dict(),
    }


async def _latest_paid_subscription(db: AsyncSession, account_id: str) -> Optional[PaymentRecord]:
    result = await db.execute(
        select(PaymentRecord)
        .where(
            PaymentRecord.account_id == account_id,
            PaymentRecord.kind == SUBSCRIPTION,
            PaymentRecord.status == "paid",
        )
        .order_by(PaymentRecord.paid_at.desc(), PaymentRecord.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def request_refund(
    db: AsyncSession,
    provider: PaymentProvider,
    account_id: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Refund the latest subscription payment if it is recent and unused."""
    now = now or utcnow()
    payment = await _latest_paid_subscription(db, account_id)
    if payment is None:
        raise NoRefundablePayment("No refundable subscription payment found.")

    paid_at = as_utc(payment.paid_at or payment.created_at)
    elapsed = now - paid_at
    if elapsed > timedelta(days=settings.REFUND_WINDOW_DAYS):
        raise RefundWindowExpired(
            f"Refunds are only available within {settings.REFUND_WINDOW_DAYS} days of payment.",
            days_elapsed=elapsed.days,
            refund_window_days=settings.REFUND_WINDOW_DAYS,
        )
    if await has_usage_since(db, account_id, paid_at):
        raise UsageDetected("Lunas were used after this payment, so it cannot be refunded.")

    record_id = payment.id
    external_payment_id = payment.external_payment_id
    refunded_amount = to_decimal(payment.amount)
    encrypted_key = (await load_account(db, account_id, for_update=False)).billing_key

    await provider.refund(external_payment_id, reason="Customer refund request within the refund window, unused")

    async def operation() -> LedgerMutation:
        flipped = await db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.id == record_id, PaymentRecord.status == "paid")
            .values(status="refunded", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            raise NoRefundablePayment("Payment was already refunded.")

        account = await load_account(db, account_id)
        before = Buckets.from_account(account)
        after = Buckets(promotional=before.promotional)
        return await apply_balances(
            db,
            account,
            after,
            action=LedgerAction.REFUND,
            description=f"Refund of {int(refunded_amount):,} KRW; plan reset to Free",
            reference_type="payment",
            reference_id=external_payment_id,
            now=now,
            plan=PlanTier.FREE.value,
            plan_expires_at=None,
            auto_renew=False,
            billing_key=None,
        )

    try:
        mutation = await run_balance_transaction(db, operation)
    except Exception:
        logger.error("Provider refunded %s but the local reversal failed for %s", external_payment_id, account_id)
        raise
    await _release_billing_key(provider, encrypted_key, account_id)

    logger.info("Refunded payment %s for %s (%s KRW)", external_payment_id, account_id, refunded_amount)
    return {
        "success": True,
        "refunded_amount": float(refunded_amount),
        "payment_id": external_payment_id,
        "plan": PlanTier.FREE.value,
        "balances": mutation.buckets.as_dict(),
    }


def _account_context(custom_data: Dict[str, Any]) -> Optional[str]:
    for key in ("account_id", "user_id", "userId"):
        value = str(custom_data.get(key) or "").strip()
        if value:
            return value
    return None


async def handle_payment_webhook(
    db: AsyncSession,
    provider: PaymentProvider,
    payload: Dict[str, Any],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Apply a provider notification after re-fetching the payment.

    Duplicate and out-of-order deliveries are safe: an unknown payment is
    recorded from the verified data, and credits are granted only once.
    """
    now = now or utcnow()
    payment_id = str(payload.get("imp_uid") or "").strip()
    if not payment_id:
        raise PaymentVerificationFailed("Webhook payload is missing imp_uid.")

    verified = await provider.verify_payment(payment_id)
    custom = dict(verified.custom_data or {})
    account_id = _account_context(custom)
    merchant_uid = verified.merchant_uid or payload.get("merchant_uid")
    credits = custom.get("credits")
    kind = str(custom.get("kind") or (PURCHASE if credits else SUBSCRIPTION))
    plan = custom.get("plan")

    if verified.status in ("cancelled", "failed"):
        async def mark_closed() -> str:
            record = await find_payment(db, payment_id)
            if record is None:
                await _upsert_payment(
                    db,
                    external_payment_id=payment_id,
                    status=verified.status,
                    now=now,
                    account_id=account_id,
                    kind=kind,
                    plan=plan,
                    amount=to_decimal(verified.amount),
                    merchant_uid=merchant_uid,
                )
                return verified.status
            if record.status == "pending":
                record.status = verified.status
                record.updated_at = now
                await db.flush()
            return record.status

        status = await run_balance_transaction(db, mark_closed)
        return {"ok": True, "payment_id": payment_id, "status": status, "fulfilled": False}

    if verified.status != "paid":
        await run_balance_transaction(
            db,
            lambda: _upsert_payment(
                db,
                external_payment_id=payment_id,
                status="pending",
                now=now,
                account_id=account_id,
                kind=kind,
                plan=plan,
                amount=to_decimal(verified.amount),
                merchant_uid=merchant_uid,
            ),
        )
        return {"ok": True, "payment_id": payment_id, "status": "pending", "fulfilled": False}

    record = await find_payment(db, payment_id)
    if record is not None and record.fulfilled_at is not None:
        return {"ok": True, "payment_id": payment_id, "status": record.status, "already_processed": True}

    account_id = account_id or (record.account_id if record else None)
    kind = record.kind if record is not None and not custom.get("kind") else kind
    plan = plan or (record.plan if record else None)

    if account_id and kind == SUBSCRIPTION and plan:
        quote = await quote_subscription_price(db, account_id, plan, custom.get("promo_code"), now=now)
        if to_decimal(verified.amount) == quote.amount:
            billing_key = custom.get("billing_key") or custom.get("customer_uid")
            result = await run_balance_transaction(
                db,
                lambda: _activate_plan(
                    db,
                    account_id=account_id,
                    quote=quote,
                    verified=verified,
                    billing_key=billing_key,
                    merchant_uid=merchant_uid,
                    now=now,
                ),
            )
            fulfilled = result is not None
            logger.info("Webhook %s fulfilled subscription for %s: %s", payment_id, account_id, fulfilled)
            return {
                "ok": True,
                "payment_id": payment_id,
                "status": "paid",
                "fulfilled": fulfilled,
                "already_processed": not fulfilled,
            }
        logger.warning(
            "Webhook %s amount %s does not match quote %s for %s; recording without fulfilment",
            payment_id,
            verified.amount,
            quote.amount,
            account_id,
        )

    if account_id and kind == PURCHASE and credits:
        async def fulfil_purchase() -> bool:
            stored = await _upsert_payment(
                db,
                external_payment_id=payment_id,
                status="paid",
                now=now,
                account_id=account_id,
                kind=PURCHASE,
                amount=to_decimal(verified.amount),
                credits=int(credits),
                merchant_uid=merchant_uid,
                pay_method=verified.pay_method,
                paid_at=verified.paid_at or now,
            )
            if not await _claim_fulfilment(db, stored.id, now):
                return False
            await credit(
                db,
                account_id,
                "purchased",
                int(stored.credits or credits),
                LedgerAction.PURCHASE,
                f"Luna purchase ({int(stored.credits or credits)} lunas)",
                reference_type="payment",
                reference_id=payment_id,
                now=now,
            )
            return True

        fulfilled = await run_balance_transaction(db, fulfil_purchase)
        return {"ok": True, "payment_id": payment_id, "status": "paid", "fulfilled": fulfilled}

    await run_balance_transaction(
        db,
        lambda: _upsert_payment(
            db,
            external_payment_id=payment_id,
            status="paid",
            now=now,
            account_id=account_id,
            kind=kind,
            plan=plan,
            amount=to_decimal(verified.amount),
            credits=int(credits) if credits else None,
            merchant_uid=merchant_uid,
            pay_method=verified.pay_method,
            paid_at=verified.paid_at or now,
        ),
    )
    logger.info("Webhook %s recorded as paid, awaiting client confirmation", payment_id)
    return {"ok": True, "payment_id": payment_id, "status": "paid", "fulfilled": False}


async def verify_client_payment(
    provider: PaymentProvider,
    payment_id: str,
    expected_amount: Optional[Any] = None,
) -> Dict[str, Any]:
    """Read-only provider check the client runs before starting a subscription."""
    verified = await provider.verify_payment(payment_id)
    amount_ok = expected_amount is None or to_decimal(verified.amount) == to_decimal(expected_amount)
    return {
        "payment_id": verified.payment_id,
        "status": verified.status,
        "amount": float(verified.amount),
        "paid_at": verified.paid_at.isoformat() if verified.paid_at else None,
        "merchant_uid": verified.merchant_uid,
        "verified": verified.status == "paid" and amount_ok,
    }
