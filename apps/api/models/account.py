"""Account model: plan state and the four credit buckets."""

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """One row per authenticated user, provisioned lazily on first contact."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint(
            "daily_lunas >= 0 AND monthly_bonus_lunas >= 0 AND promotional_lunas >= 0 AND purchased_lunas >= 0",
            name="ck_accounts_buckets_non_negative",
        ),
    )

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)

    plan = Column(String, nullable=False, default="free", index=True)
    plan_started_at = Column(DateTime(timezone=True), nullable=True)
    plan_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    auto_renew = Column(Boolean, nullable=False, default=False)
    billing_key = Column(String, nullable=True)

    # Credit buckets, drained in this order
    daily_lunas = Column(Numeric(12, 2), nullable=False, default=0)
    monthly_bonus_lunas = Column(Numeric(12, 2), nullable=False, default=0)
    promotional_lunas = Column(Numeric(12, 2), nullable=False, default=0)
    purchased_lunas = Column(Numeric(12, 2), nullable=False, default=0)
    balance_version = Column(Integer, nullable=False, default=0)

    # Calendar-date gates (UTC)
    last_daily_grant_date = Column(Date, nullable=True)
    monthly_bonus_granted_on = Column(Date, nullable=True)
    last_renewal_attempt_on = Column(Date, nullable=True)

    referral_code = Column(String, unique=True, nullable=False, index=True)
    device_limit = Column(Integer, nullable=False, default=2)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    # Ledger rows are never removed with the account
    ledger_entries = relationship("LedgerEntry", back_populates="account", passive_deletes="all")
    devices = relationship("Device", back_populates="account", cascade="all, delete-orphan")
