"""Routes for the external scheduler."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import get_session_maker
from services.grants import run_grant_sweep
from services.payment_provider import PaymentProvider, get_payment_provider

router = APIRouter()


def require_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    expected = settings.CRON_SECRET or ""
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured.")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret.")


@router.post("/grants/sweep")
async def grants_sweep(
    _auth: None = Depends(require_cron_secret),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    summary = await run_grant_sweep(session_maker, provider)
    return {"success": True, **summary.as_dict()}
