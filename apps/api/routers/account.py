"""Account balance, ledger history and device routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.accounts import get_account_overview, get_or_create_account, remove_device
from services.credits import get_ledger_entries

router = APIRouter()


@router.get("")
async def account_overview(
    device_id: Optional[str] = Query(default=None, max_length=128),
    device_name: Optional[str] = Query(default=None, max_length=128),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_account_overview(
        db,
        auth.account_id,
        email=auth.email,
        device_id=device_id,
        device_name=device_name,
    )


@router.get("/ledger")
async def account_ledger(
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_or_create_account(db, auth.account_id, auth.email)
    return {"entries": await get_ledger_entries(db, auth.account_id, limit=limit)}


@router.delete("/devices/{device_id}")
async def delete_device(
    device_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if not await remove_device(db, auth.account_id, device_id):
        raise HTTPException(status_code=404, detail="Device not found.")
    return {"success": True, "device_id": device_id}
