"""PaymentRecord model: one row per provider payment."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.sql import func

from database import Base


class PaymentRecord(Base):
    """Provider payment; status moves only on provider-verified data."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    external_payment_id = Column(String, unique=True, nullable=False, index=True)
    merchant_uid = Column(String, nullable=True, index=True)
    kind = Column(String, nullable=False, default="subscription")
    plan = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    credits = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    pay_method = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # Set exactly once, when the credit side effects were applied
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
