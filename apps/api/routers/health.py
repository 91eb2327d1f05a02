"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database, Redis and enhancement provider status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "enhancement_provider": settings.ENHANCEMENT_PROVIDER,
        "dispatch_mode": settings.ENHANCEMENT_DISPATCH_MODE,
    }

    try:
        from database import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis backs the enhancement queue; local dispatch mode runs without it.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if settings.ENHANCEMENT_DISPATCH_MODE == "queue":
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if settings.ENHANCEMENT_PROVIDER == "openai" and not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")
    if settings.ENHANCEMENT_PROVIDER == "http" and not settings.ENHANCEMENT_API_URL:
        missing.append("ENHANCEMENT_API_URL")
    if settings.BILLING_ENABLED and not settings.STRIPE_SECRET_KEY:
        missing.append("STRIPE_SECRET_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
