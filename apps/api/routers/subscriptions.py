"""Subscription start, cancel and refund routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import get_or_create_account
from services.payment_provider import PaymentProvider, get_payment_provider
from services.subscriptions import cancel_subscription, request_refund, start_subscription

router = APIRouter()


class StartSubscriptionRequest(BaseModel):
    plan: str = Field(min_length=1, max_length=16)
    payment_id: str = Field(min_length=1, max_length=128)
    merchant_uid: Optional[str] = Field(default=None, max_length=128)
    billing_key: Optional[str] = Field(default=None, max_length=256)
    promo_code: Optional[str] = Field(default=None, max_length=64)


@router.post("/start")
async def start(
    request: StartSubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("subscription_start", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    result = await start_subscription(
        db,
        provider,
        auth.account_id,
        request.plan,
        request.payment_id,
        merchant_uid=request.merchant_uid,
        billing_key=request.billing_key,
        promo_code=request.promo_code,
    )
    return result.as_dict()


@router.post("/cancel")
async def cancel(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    return await cancel_subscription(db, provider, auth.account_id)


@router.post("/refund")
async def refund(
    _rate_limit: None = Depends(rate_limit("subscription_refund", limit=5, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    return await request_refund(db, provider, auth.account_id)
