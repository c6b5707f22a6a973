"""Admin router: plan catalog, platform reporting and on-demand billing sweeps."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker, get_db
from models.subscription_plan import UNLIMITED_REQUESTS
from routers.auth_scope import AuthContext, require_admin
from routers.responses import ok
from services import plans as plan_service
from services import usage as usage_service
from services.billing_scheduler import BillingScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


class PlanUpdateRequest(BaseModel):
    display_name: Optional[str] = None
    description: Optional[str] = None
    monthly_requests: Optional[int] = Field(default=None, ge=UNLIMITED_REQUESTS)
    monthly_price: Optional[int] = Field(default=None, ge=0)
    yearly_price: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


def _scheduler(request: Request) -> BillingScheduler:
    scheduler = getattr(request.app.state, "billing_scheduler", None)
    if scheduler is None:
        # Scheduler loop disabled; sweeps can still run on demand.
        scheduler = BillingScheduler(async_session_maker)
        request.app.state.billing_scheduler = scheduler
    return scheduler


@router.get("/plans")
async def plans_with_stats(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await plan_service.list_plans_with_stats(db))


@router.get("/plans/comparison")
async def plans_comparison(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await plan_service.get_plans_comparison(db))


@router.get("/plans/{plan_id}")
async def plan_details(
    plan_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await plan_service.get_plan_details(plan_id, db))


@router.get("/plans/{plan_id}/stats")
async def plan_usage_stats(
    plan_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await plan_service.get_plan_usage_stats(plan_id, db))


@router.get("/subscriptions/counts")
async def subscription_counts(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await plan_service.get_subscription_counts(db))


@router.get("/usage")
async def api_usage(
    timeframe: str = Query(default="month"),
    errors_limit: int = Query(default=10, ge=1, le=100),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(
        {
            "statistics": await usage_service.get_api_statistics(db, timeframe=timeframe),
            "model_usage": await usage_service.get_model_usage_stats(db, timeframe=timeframe),
            "recent_errors": await usage_service.get_recent_errors(None, db, limit=errors_limit),
        }
    )


@router.put("/plans/{plan_id}")
async def update_plan(
    plan_id: str,
    request: PlanUpdateRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await plan_service.update_plan(plan_id, request.model_dump(exclude_unset=True), db)
    return ok(result, "Plan updated successfully")


@router.post("/billing/sweeps/renewal")
async def run_renewal_sweep(
    admin: AuthContext = Depends(require_admin),
    scheduler: BillingScheduler = Depends(_scheduler),
):
    logger.info("Renewal sweep triggered by admin %s", admin.user_id)
    result = await scheduler.run_renewal_sweep()
    return ok(result.to_dict(), "Renewal sweep completed")


@router.post("/billing/sweeps/expiry")
async def run_expiry_sweep(
    admin: AuthContext = Depends(require_admin),
    scheduler: BillingScheduler = Depends(_scheduler),
):
    logger.info("Expiry sweep triggered by admin %s", admin.user_id)
    result = await scheduler.run_expiry_sweep()
    return ok(result.to_dict(), "Expiry sweep completed")
