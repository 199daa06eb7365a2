"""Feature-use debit and cost table routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import get_or_create_account, use_feature
from services.entitlements import entitlement_summary

router = APIRouter()


class UseFeatureRequest(BaseModel):
    feature: str = Field(min_length=1, max_length=64)
    device_id: Optional[str] = Field(default=None, max_length=128)


@router.post("/use")
async def use_credits(
    request: UseFeatureRequest,
    _rate_limit: None = Depends(rate_limit("credits_use", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    return await use_feature(db, auth.account_id, request.feature, device_id=request.device_id)


@router.get("/costs")
async def credit_costs(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await get_or_create_account(db, auth.account_id, auth.email)
    return entitlement_summary(account.plan)


@router.post("/purchase")
async def purchase_credits(auth: AuthContext = Depends(get_auth_context)):
    return JSONResponse(
        status_code=410,
        content={
            "error": "purchase_retired",
            "message": "Direct luna purchases are no longer offered. Subscribe to a plan instead.",
            "retryable": False,
        },
    )
