"""Referral model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class Referral(Base):
    """Referrer/referred pair; at most one row per referred account."""

    __tablename__ = "referrals"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    referred_id = Column(String, ForeignKey("accounts.id"), nullable=False, unique=True, index=True)
    referrer_bonus = Column(Integer, nullable=False, default=0)
    referred_bonus = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
