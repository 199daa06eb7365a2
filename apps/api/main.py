"""
LunaWave Billing - FastAPI Backend
Ledger, entitlement and subscription API with scheduled grant sweeps.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import account, credits, health, internal, payments, promotions, subscriptions
from services.errors import BillingError
from services.grants import run_grant_sweep
from services.payment_provider import get_payment_provider

logger = logging.getLogger(__name__)


async def _periodic_grant_sweep() -> None:
    interval_minutes = max(int(settings.GRANT_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            summary = await run_grant_sweep(async_session_maker, get_payment_provider())
            if summary.processed:
                print(
                    f"🌙 Grant sweep: processed={summary.processed} ok={summary.success_count} "
                    f"failed={summary.fail_count} bonuses={summary.bonuses_granted} "
                    f"renewals={summary.renewals_succeeded}/{summary.renewals_failed} expired={summary.expired}"
                )
        except Exception as exc:
            print(f"⚠️ Grant sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting LunaWave Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    sweep_task = None
    if settings.GRANT_SWEEP_ENABLED and int(settings.GRANT_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_grant_sweep())
        print(f"📅 Grant sweep loop enabled (every {int(settings.GRANT_SWEEP_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="LunaWave Billing API",
    description="Luna credit ledger, plan entitlements and subscription lifecycle",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={
            "error": "store_unavailable",
            "message": "Temporary storage failure. Please retry.",
            "retryable": True,
        },
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(account.router, prefix="/account", tags=["Account"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(promotions.router, prefix="/promotions", tags=["Promotions"])
app.include_router(promotions.referrals_router, prefix="/referrals", tags=["Referrals"])
app.include_router(internal.router, prefix="/internal", tags=["Internal"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "LunaWave Billing API",
        "version": "0.1.0",
        "status": "running"
    }
