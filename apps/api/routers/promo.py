"""Promo code router: admin management plus validation for any user."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import DiscountType
from models.promo_code import UNLIMITED_USAGE
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.responses import ok
from services import promo as promo_service

router = APIRouter()


class PromoCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: int
    max_usage: int = Field(default=UNLIMITED_USAGE, ge=UNLIMITED_USAGE)
    max_usage_per_user: int = Field(default=1, ge=1)
    valid_from: datetime
    valid_until: datetime
    min_amount: int = Field(default=0, ge=0)
    max_discount: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True


class PromoUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount_value: Optional[int] = None
    max_usage: Optional[int] = Field(default=None, ge=UNLIMITED_USAGE)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    min_amount: Optional[int] = Field(default=None, ge=0)
    max_discount: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class PromoValidateRequest(BaseModel):
    code: str = Field(min_length=1)
    amount: float = Field(gt=0, allow_inf_nan=False)


@router.post("/validate")
async def validate_promo(
    request: PromoValidateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    validation = await promo_service.validate_promo_code(request.code, request.amount, auth.user_id, db)
    return ok(validation.to_dict())


@router.post("")
async def create_promo(
    request: PromoCreateRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await promo_service.create_promo_code(request.model_dump(), admin.user_id, db)
    return ok(result, "Promo code created successfully")


@router.get("")
async def list_promos(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    active_only: bool = Query(default=False),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await promo_service.list_promo_codes(db, page=page, limit=limit, active_only=active_only))


@router.get("/{promo_id}")
async def get_promo(
    promo_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await promo_service.get_promo_code(promo_id, db))


@router.get("/{promo_id}/stats")
async def promo_stats(
    promo_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await promo_service.get_promo_code_stats(promo_id, db))


@router.put("/{promo_id}")
async def update_promo(
    promo_id: str,
    request: PromoUpdateRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await promo_service.update_promo_code(promo_id, request.model_dump(exclude_unset=True), db)
    return ok(result, "Promo code updated successfully")


@router.delete("/{promo_id}")
async def delete_promo(
    promo_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await promo_service.delete_promo_code(promo_id, db)
    return ok(None, result["message"])
