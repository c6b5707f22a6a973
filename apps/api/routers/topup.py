"""Top-up router: manual proof requests, Midtrans payments and the gateway webhook."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import TopupRequestStatus
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from routers.responses import ok
from services import promo as promo_service
from services import topup as topup_service
from services.midtrans import MidtransClient, get_midtrans_client
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class ManualTopupRequest(BaseModel):
    amount: float = Field(gt=0, allow_inf_nan=False)
    payment_method: str = Field(default="bank_transfer", min_length=1, max_length=64)


class ProofRequest(BaseModel):
    topup_request_id: str
    proof_url: str = Field(min_length=1, max_length=2048)


class AutomaticTopupRequest(BaseModel):
    amount: float = Field(gt=0, allow_inf_nan=False)
    promo_code: Optional[str] = None


class PromoCheckRequest(BaseModel):
    code: str = Field(min_length=1)
    amount: float = Field(gt=0, allow_inf_nan=False)


class ReviewRequest(BaseModel):
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)


@router.post("/manual/request")
async def create_manual_request(
    request: ManualTopupRequest,
    _rate_limit: None = Depends(rate_limit("topup_manual", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(auth.user_id, db, email=auth.email, role=auth.role)
    result = await topup_service.create_manual_topup_request(auth.user_id, request.amount, request.payment_method, db)
    return ok(result, "Topup request created. Please upload your payment proof.")


@router.post("/manual/proof")
async def attach_proof(
    request: ProofRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await topup_service.attach_topup_proof(request.topup_request_id, auth.user_id, request.proof_url, db)
    return ok(result, "Payment proof submitted for review")


@router.post("/validate-promo")
async def validate_promo(
    request: PromoCheckRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    validation = await promo_service.validate_promo_code(request.code, request.amount, auth.user_id, db)
    return ok(validation.to_dict())


@router.post("/automatic/calculate")
async def calculate_automatic(
    request: AutomaticTopupRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await topup_service.calculate_automatic_topup(
        auth.user_id, request.amount, db, promo_code=request.promo_code
    )
    return ok(result)


@router.post("/automatic/process")
async def process_automatic(
    request: AutomaticTopupRequest,
    _rate_limit: None = Depends(rate_limit("topup_automatic", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: MidtransClient = Depends(get_midtrans_client),
):
    await ensure_user(auth.user_id, db, email=auth.email, role=auth.role)
    result = await topup_service.process_automatic_topup(
        auth.user_id, request.amount, db, gateway, promo_code=request.promo_code
    )
    return ok(result, "Payment session created")


@router.post("/webhook/midtrans")
async def midtrans_webhook(
    payload: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    gateway: MidtransClient = Depends(get_midtrans_client),
):
    result = await topup_service.handle_midtrans_webhook(payload, db, gateway)
    return ok(result, result["message"])


@router.get("/status/{order_id}")
async def topup_status(
    order_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: MidtransClient = Depends(get_midtrans_client),
):
    return ok(await topup_service.check_topup_status(order_id, auth.user_id, db, gateway))


@router.get("/requests")
async def my_requests(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return ok(await topup_service.list_user_topup_requests(auth.user_id, db, limit=limit, offset=offset))


@router.get("/requests/{request_id}")
async def my_request(
    request_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return ok(await topup_service.get_topup_request(request_id, auth.user_id, db))


@router.get("/admin/requests")
async def all_requests(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[TopupRequestStatus] = Query(default=None),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ok(await topup_service.list_topup_requests(db, page=page, limit=limit, status=status))


@router.post("/admin/requests/{request_id}/approve")
async def approve_request(
    request_id: str,
    request: Optional[ReviewRequest] = None,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await topup_service.approve_topup_request(
        request_id, admin.user_id, db, notes=request.notes if request else None
    )
    return ok(result, "Topup request approved")


@router.post("/admin/requests/{request_id}/reject")
async def reject_request(
    request_id: str,
    request: RejectRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await topup_service.reject_topup_request(request_id, admin.user_id, request.reason, db)
    return ok(result, "Topup request rejected")
