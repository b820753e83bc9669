"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
import redis.asyncio as redis

from config import settings, validate_security_settings
from database import async_session_maker, engine
from models.payment_intent import PaymentIntent

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Overall health: database, Redis and the number of payments
    waiting for reconciliation.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "reconciliation_backlog": None,
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
        async with async_session_maker() as db:
            backlog = await db.execute(
                select(func.count(PaymentIntent.id)).where(PaymentIntent.needs_reconciliation.is_(True))
            )
            health_status["reconciliation_backlog"] = int(backlog.scalar_one())
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Readiness probe: refuse traffic while signing secrets are defaults."""
    try:
        validate_security_settings()
    except ValueError as exc:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "reason": str(exc)},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
