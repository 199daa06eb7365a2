"""Payment provider webhook and client-side verification routes."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.payment_provider import PaymentProvider, get_payment_provider
from services.subscriptions import handle_payment_webhook, verify_client_payment

router = APIRouter()
logger = logging.getLogger(__name__)


class PaymentWebhook(BaseModel):
    imp_uid: str = Field(min_length=1, max_length=128)
    merchant_uid: Optional[str] = Field(default=None, max_length=128)
    status: Optional[str] = Field(default=None, max_length=32)


class VerifyPaymentRequest(BaseModel):
    payment_id: str = Field(min_length=1, max_length=128)
    expected_amount: Optional[float] = Field(default=None, ge=0)


@router.post("/webhook")
async def payment_webhook(
    payload: PaymentWebhook,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    """PortOne notification; the body is only a hint, state comes from the provider API."""
    body: Dict[str, Any] = payload.model_dump()
    logger.info("Payment webhook %s (%s)", payload.imp_uid, payload.status)
    return await handle_payment_webhook(db, provider, body)


@router.post("/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    auth: AuthContext = Depends(get_auth_context),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    return await verify_client_payment(provider, request.payment_id, request.expected_amount)
