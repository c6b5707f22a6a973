"""
Billing Service - FastAPI Backend
Wallet ledger, subscriptions, promo codes and top-ups.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import admin, billing, health, promo, topup, wallet
from routers.responses import failure
from services.billing_scheduler import BillingScheduler
from services.errors import BillingError
from services.plans import seed_default_plans

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.SEED_DEFAULT_PLANS:
        try:
            async with async_session_maker() as db:
                created = await seed_default_plans(db)
            if created:
                print(f"🌱 Seeded {created} default subscription plans.")
        except Exception as exc:
            print(f"⚠️ Plan seeding skipped: {exc}")

    scheduler = BillingScheduler(async_session_maker)
    app.state.billing_scheduler = scheduler
    if settings.BILLING_SCHEDULER_ENABLED:
        scheduler.start(run_immediately=True)
        print(
            "📅 Billing sweeps enabled "
            f"(renewal every {scheduler.renewal_interval_hours:g}h, "
            f"expiry every {scheduler.expiry_interval_hours:g}h)."
        )
    yield
    # Shutdown
    await scheduler.stop()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Billing API",
    description="Prepaid wallet, subscription plans, promo codes and Midtrans top-ups",
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
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=failure(exc.message, exc.code))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=failure(str(exc.detail), "http_error"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(status_code=400, content=failure(message, "validation_error"))


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(wallet.router, prefix="/wallet", tags=["Wallet"])
app.include_router(topup.router, prefix="/topup", tags=["Topup"])
app.include_router(promo.router, prefix="/promo", tags=["Promo"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Billing API",
        "version": "0.1.0",
        "status": "running"
    }
