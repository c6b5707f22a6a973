"""
Liveness, readiness and dependency health for the billing API.
"""

from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {e}"
    return "up"


async def _redis_status() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
    except Exception as e:
        return f"down: {e}"
    return "up"


def _scheduler_status(request: Request) -> str:
    scheduler = getattr(request.app.state, "billing_scheduler", None)
    if scheduler is None:
        return "not_initialized"
    return "running" if scheduler.running else "idle"


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Database is required; Redis only backs rate limits."""
    database = await _database_status()
    cache = await _redis_status()

    if database != "up":
        status = "unhealthy"
    elif cache != "up":
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "api": "up",
        "database": database,
        "redis": cache,
        "payment_gateway": "configured" if settings.MIDTRANS_SERVER_KEY else "missing",
        "billing_scheduler": _scheduler_status(request),
    }


@router.get("/health/ready")
async def readiness_check():
    missing = []
    if not settings.MIDTRANS_SERVER_KEY:
        missing.append("MIDTRANS_SERVER_KEY")
    database = await _database_status()

    if missing or database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
