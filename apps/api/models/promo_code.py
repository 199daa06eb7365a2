"""PromoCode and PromoRedemption models."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class PromoCode(Base):
    """Redeemable code; `code` is stored upper-case so lookups are case-insensitive."""

    __tablename__ = "promo_codes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String, unique=True, nullable=False, index=True)
    type = Column(String, nullable=False)
    value = Column(Numeric(12, 2), nullable=False, default=0)
    used_count = Column(Integer, nullable=False, default=0)
    max_uses = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    target_plan = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PromoRedemption(Base):
    """One claim of a promo code by an account."""

    __tablename__ = "promo_redemptions"
    __table_args__ = (UniqueConstraint("promo_id", "account_id", name="uq_promo_redemptions_promo_account"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    promo_id = Column(String, ForeignKey("promo_codes.id"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    payment_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
