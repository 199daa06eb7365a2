"""Models package."""

from .account import Account
from .credit_ledger import LedgerEntry
from .payment import PaymentRecord
from .promo_code import PromoCode, PromoRedemption
from .referral import Referral
from .device import Device
