"""
Word Ledger - FastAPI Backend
Main application entry point: word balances, payments, coupons and plans.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    billing,
    usage,
    coupons,
    subscriptions,
)
from services.reconciliation_queue import recover_unapplied_settlements
from services.subscriptions import SubscriptionLifecycleManager


async def run_cycle_sweep_once() -> dict:
    async with async_session_maker() as db:
        return await SubscriptionLifecycleManager(db).run_cycle_sweep()


async def _periodic_cycle_sweep() -> None:
    interval_minutes = max(int(settings.CYCLE_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_cycle_sweep_once()
            if any(result.values()):
                print(
                    f"🔁 Cycle sweep: renewed={result['renewed']} expired={result['expired']} "
                    f"skipped={result['skipped']} failed={result['failed']}"
                )
        except Exception as exc:
            print(f"⚠️ Cycle sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    print("🚀 Starting Word Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_unapplied_settlements()
        if recovered:
            print(f"♻️ Flagged {recovered} settled payments for reconciliation after startup.")
    except Exception as exc:
        print(f"⚠️ Settlement recovery skipped: {exc}")

    sweep_task = None
    if int(settings.CYCLE_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_cycle_sweep())
        print(f"📅 Cycle sweep loop enabled (every {int(settings.CYCLE_SWEEP_INTERVAL_MINUTES)} min).")
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Word Ledger API",
    description="Word-balance ledger with payment reconciliation, coupons and plan cycles",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(subscriptions.router, tags=["Plans"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(usage.router, prefix="/usage", tags=["Usage"])
app.include_router(coupons.router, prefix="/coupons", tags=["Coupons"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Word Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
