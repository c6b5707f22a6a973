"""Subscription, plan and usage router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import BillingCycle
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.responses import ok
from services import plans as plan_service
from services import subscriptions as subscription_service
from services import usage as usage_service
from services.errors import BillingError
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class UpgradeRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class AutoRenewRequest(BaseModel):
    enabled: bool


class CancelRequest(BaseModel):
    immediately: bool = False


async def _scoped_user(auth: AuthContext, db: AsyncSession) -> str:
    await ensure_user(auth.user_id, db, email=auth.email, role=auth.role)
    return auth.user_id


@router.get("/overview")
async def billing_overview(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    return ok(await subscription_service.get_billing_overview(user_id, db))


@router.get("/history")
async def billing_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    return ok(await subscription_service.get_billing_history(user_id, db, limit=limit, offset=offset))


@router.get("/usage")
async def usage_stats(
    timeframe: str = Query(default="month"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    return ok(await usage_service.get_usage_stats(user_id, db, timeframe=timeframe))


@router.get("/errors")
async def recent_errors(
    limit: int = Query(default=10, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    return ok(await usage_service.get_recent_errors(user_id, db, limit=limit))


@router.get("/subscription")
async def current_subscription(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    subscription = await subscription_service.get_current_subscription(user_id, db)
    if subscription is None:
        return ok(None, "No active subscription")
    return ok(subscription)


@router.get("/plans")
async def available_plans(db: AsyncSession = Depends(get_db)):
    return ok(await plan_service.list_plans(db))


@router.get("/plans/hierarchy")
async def plan_hierarchy(db: AsyncSession = Depends(get_db)):
    return ok(await plan_service.get_plan_hierarchy(db))


@router.post("/upgrade")
async def upgrade_plan(
    request: UpgradeRequest,
    _rate_limit: None = Depends(rate_limit("billing_upgrade", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    result = await subscription_service.upgrade_plan(user_id, request.plan_id, request.billing_cycle, db)
    return ok(result, "Subscription updated successfully")


@router.post("/upgrade/preview")
async def upgrade_preview(
    request: UpgradeRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    return ok(await subscription_service.get_upgrade_preview(user_id, request.plan_id, request.billing_cycle, db))


@router.post("/validate-upgrade")
async def validate_upgrade(
    request: UpgradeRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    try:
        change = await subscription_service.validate_upgrade_request(
            user_id, request.plan_id, request.billing_cycle, db
        )
    except BillingError as exc:
        return ok({"is_valid": False, "error_message": exc.message, "error": exc.code})
    return ok({"is_valid": True, "error_message": None, "change": change.kind, "price": change.price})


@router.put("/auto-renew")
async def set_auto_renew(
    request: AutoRenewRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    result = await subscription_service.toggle_auto_renew(user_id, request.enabled, db)
    return ok(result, f"Auto-renew {'enabled' if request.enabled else 'disabled'}")


@router.post("/auto-renew/process")
async def process_auto_renew(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    result = await subscription_service.process_auto_renew(user_id, db)
    return ok(result, result.get("message"))


@router.post("/cancel")
async def cancel_subscription(
    request: CancelRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = await _scoped_user(auth, db)
    result = await subscription_service.cancel_subscription(user_id, db, immediately=request.immediately)
    return ok(result, result["message"])
