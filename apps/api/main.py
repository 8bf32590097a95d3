"""
Credit Ledger - FastAPI Backend
Main application entry point with health check, billing routes and ledger sweeps.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base, async_session_maker
import models  # noqa: F401
from routers import health, billing
from services.credits import CreditService


async def _periodic_trial_expiry(ledger: CreditService) -> None:
    interval_minutes = max(int(settings.TRIAL_EXPIRY_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            expired = await ledger.expire_trial_credits()
            if expired:
                print(f"⏳ Trial expiry sweep: expired={expired}")
        except Exception as exc:
            print(f"⚠️ Trial expiry sweep tick failed: {exc}")


async def _periodic_reservation_sweep(ledger: CreditService) -> None:
    interval_minutes = max(int(settings.RESERVATION_SWEEP_INTERVAL_MINUTES), 1)
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            cancelled = await ledger.cancel_stale_reservations(settings.RESERVATION_MAX_AGE_MINUTES)
            if cancelled:
                print(f"♻️ Stale reservation sweep: cancelled={cancelled}")
        except Exception as exc:
            print(f"⚠️ Stale reservation sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    ledger = CreditService(async_session_maker)
    tasks = []
    if int(settings.TRIAL_EXPIRY_SWEEP_INTERVAL_MINUTES) > 0:
        tasks.append(asyncio.create_task(_periodic_trial_expiry(ledger)))
        print(
            "📅 Trial expiry sweep enabled "
            f"(every {int(settings.TRIAL_EXPIRY_SWEEP_INTERVAL_MINUTES)} min)."
        )
    if int(settings.RESERVATION_MAX_AGE_MINUTES) > 0:
        tasks.append(asyncio.create_task(_periodic_reservation_sweep(ledger)))
        print(
            "📅 Stale reservation sweep enabled "
            f"(reservations older than {int(settings.RESERVATION_MAX_AGE_MINUTES)} min)."
        )
    yield
    # Shutdown
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Prepaid credit balances, reservations and usage history",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
