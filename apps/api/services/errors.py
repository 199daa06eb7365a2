"""Typed business and transient errors for the ledger engine.

Every error carries a stable ``code``, the HTTP status the API renders it
with, whether the caller may retry, and numeric context for the client.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for errors rendered to API callers."""

    code = "billing_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        for key, value in self.context.items():
            payload[key] = float(value) if isinstance(value, Decimal) else value
        return payload


class Unauthorized(BillingError):
    code = "unauthorized"
    status_code = 401


class AccountNotFound(BillingError):
    code = "account_not_found"
    status_code = 404

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} not found.", account_id=account_id)


class InsufficientCredit(BillingError):
    code = "insufficient_lunas"
    status_code = 402

    def __init__(self, *, required: Decimal, available: Decimal) -> None:
        shortfall = required - available
        super().__init__(
            f"Insufficient lunas. Required: {required}, available: {available}.",
            required=required,
            available=available,
            shortfall=shortfall,
        )
        self.shortfall = shortfall


class PlanUpgradeRequired(BillingError):
    code = "plan_upgrade_required"
    status_code = 403

    def __init__(self, *, feature: str, required_plan: str, current_plan: str) -> None:
        super().__init__(
            f"Feature '{feature}' requires the {required_plan} plan or above.",
            feature=feature,
            required_plan=required_plan,
            current_plan=current_plan,
        )
        self.required_plan = required_plan


class UnknownFeature(BillingError):
    code = "unknown_feature"

    def __init__(self, feature: str) -> None:
        super().__init__(f"Unknown feature '{feature}'.", feature=feature)


class InvalidPlan(BillingError):
    code = "invalid_plan"

    def __init__(self, plan: Any) -> None:
        super().__init__(f"Invalid plan '{plan}'. Use: tier1, tier2, tier3.", plan=str(plan))


class PaymentVerificationFailed(BillingError):
    code = "payment_verification_failed"


class InvalidPromoCode(BillingError):
    code = "invalid_code"


class PromoExpired(BillingError):
    code = "expired"


class PromoLimitReached(BillingError):
    code = "limit_reached"


class PromoAlreadyRedeemed(BillingError):
    code = "already_redeemed"


class PromoNotApplicable(BillingError):
    code = "promo_not_applicable"


class InvalidReferralCode(InvalidPromoCode):
    """Referral code does not resolve to any account."""


class SelfReferral(BillingError):
    code = "self_referral"


class AlreadyReferred(BillingError):
    code = "already_referred"


class NoActiveSubscription(BillingError):
    code = "no_active_subscription"


class NoRefundablePayment(BillingError):
    code = "no_refundable_payment"


class RefundWindowExpired(BillingError):
    code = "refund_window_expired"


class UsageDetected(BillingError):
    code = "usage_detected"


class TransientFailure(BillingError):
    """Store or provider failure; safe for the caller to retry."""

    code = "transient_failure"
    status_code = 503
    retryable = True


class PaymentProviderError(TransientFailure):
    code = "payment_provider_unavailable"


class StoreUnavailableError(TransientFailure):
    code = "store_unavailable"


class BalanceConflictError(RuntimeError):
    """Raised internally when a compare-and-swap write lost a race."""

    def __init__(self, account_id: str, expected_version: Optional[int] = None) -> None:
        super().__init__(f"Concurrent balance update for account {account_id}")
        self.account_id = account_id
        self.expected_version = expected_version
