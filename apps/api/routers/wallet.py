"""Wallet router: balance, ledger and admin adjustments."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.responses import ok
from services import wallet as wallet_service
from services.errors import NotFoundError
from services.users import ensure_user

router = APIRouter()


class FundsAdjustmentRequest(BaseModel):
    amount: float = Field(gt=0, allow_inf_nan=False)
    description: Optional[str] = None


@router.get("")
async def wallet_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(auth.user_id, db, email=auth.email, role=auth.role)
    return ok(await wallet_service.get_wallet_summary(auth.user_id, db))


@router.get("/stats")
async def wallet_stats(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(auth.user_id, db, email=auth.email, role=auth.role)
    return ok(await wallet_service.get_wallet_stats(auth.user_id, db))


@router.get("/transactions")
async def wallet_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return ok(await wallet_service.get_wallet_transactions(auth.user_id, db, limit=limit, offset=offset))


async def _existing_user(user_id: str, db: AsyncSession) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


@router.get("/admin/all")
async def all_wallets(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: Optional[str] = Query(default=None),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await wallet_service.list_wallets(db, page=page, limit=limit, search=search))


@router.get("/admin/user/{user_id}")
async def user_wallet(
    user_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _existing_user(user_id, db)
    return ok(await wallet_service.get_wallet_stats(user_id, db))


@router.get("/admin/user/{user_id}/transactions")
async def user_wallet_transactions(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _existing_user(user_id, db)
    return ok(await wallet_service.get_wallet_transactions(user_id, db, limit=limit, offset=offset))


@router.post("/admin/add-funds/{user_id}")
async def add_funds(
    user_id: str,
    request: FundsAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _existing_user(user_id, db)
    result = await wallet_service.add_funds(
        user_id, request.amount, db, description=request.description, admin_id=admin.user_id
    )
    return ok(result, "Funds added successfully")


@router.post("/admin/deduct-funds/{user_id}")
async def deduct_funds(
    user_id: str,
    request: FundsAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _existing_user(user_id, db)
    result = await wallet_service.deduct_funds(
        user_id,
        request.amount,
        db,
        description=request.description or "Manual deduction by Admin",
        admin_id=admin.user_id,
    )
    return ok(result, "Funds deducted successfully")
