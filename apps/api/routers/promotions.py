"""Promo code and referral routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import get_or_create_account
from services.promotions import complete_referral_request, redeem_promo_code, register_referral

router = APIRouter()
referrals_router = APIRouter()


class RedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class ReferralRegisterRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=32)


@router.post("/redeem")
async def redeem(
    request: RedeemRequest,
    _rate_limit: None = Depends(rate_limit("promo_redeem", limit=10, window_seconds=600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    return await redeem_promo_code(db, auth.account_id, request.code)


@referrals_router.post("/register")
async def referral_register(
    request: ReferralRegisterRequest,
    _rate_limit: None = Depends(rate_limit("referral_register", limit=10, window_seconds=600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    return await register_referral(db, auth.account_id, request.referral_code)


@referrals_router.post("/complete")
async def referral_complete(
    _rate_limit: None = Depends(rate_limit("referral_complete", limit=10, window_seconds=600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    return await complete_referral_request(db, auth.account_id)
