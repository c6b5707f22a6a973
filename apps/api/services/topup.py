"""Wallet top-ups: manual proof-backed requests and Midtrans gateway payments.

Gateway top-ups store a PENDING WALLET_TOPUP row holding the pre-discount
amount plus the promo reference. The wallet is credited from that row when
the gateway confirms, so the platform absorbs the discount.
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.enums import ApiCallStatus, PaymentStatus, PaymentType, TopupRequestStatus
from models.payment_history import PaymentHistory
from models.topup_request import TopupRequest
from models.user import User
from services import midtrans
from services import promo as promo_service
from services import wallet as wallet_service
from services.clock import utcnow
from services.errors import (
    BillingValidationError,
    BusinessRuleError,
    GatewayError,
    NotFoundError,
    StateConflictError,
)
from services.formatting import format_idr, to_idr
from services.midtrans import MidtransClient
from services.usage import log_api_call

logger = logging.getLogger(__name__)

AUTOMATIC_PAYMENT_METHOD = "midtrans_automatic"


def topup_request_to_dict(request: TopupRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "user_id": request.user_id,
        "amount": request.amount,
        "amount_formatted": format_idr(request.amount),
        "payment_method": request.payment_method,
        "status": request.status,
        "proof_image_url": request.proof_image_url,
        "reviewed_by": request.reviewed_by,
        "review_notes": request.review_notes,
        "reviewed_at": request.reviewed_at,
        "payment_history_id": request.payment_history_id,
        "created_at": request.created_at,
    }


def _check_minimum(amount: Any) -> int:
    try:
        value = to_idr(amount)
    except (TypeError, ValueError) as exc:
        raise BillingValidationError("Amount must be a number") from exc
    if value < settings.MIN_TOPUP_AMOUNT:
        raise BillingValidationError(f"Minimum topup amount is {format_idr(settings.MIN_TOPUP_AMOUNT)}")
    return value


# Manual flow


async def create_manual_topup_request(
    user_id: str,
    amount: Any,
    payment_method: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    value = _check_minimum(amount)
    request = TopupRequest(
        id=str(uuid.uuid4()),
        user_id=user_id,
        amount=value,
        payment_method=payment_method,
        status=TopupRequestStatus.PENDING,
    )
    db.add(request)
    await db.commit()
    logger.info("Manual topup request %s created for user %s amount=%s", request.id, user_id, value)
    return topup_request_to_dict(request)


async def _load_request(request_id: str, db: AsyncSession) -> TopupRequest:
    request = await db.get(TopupRequest, request_id, populate_existing=True)
    if not request:
        raise NotFoundError("Topup request not found")
    return request


async def attach_topup_proof(
    request_id: str,
    user_id: str,
    proof_url: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Record the uploaded proof URL and move the request to UNDER_REVIEW."""
    if not (proof_url or "").strip():
        raise BillingValidationError("Proof image URL is required")

    result = await db.execute(
        update(TopupRequest)
        .where(
            TopupRequest.id == request_id,
            TopupRequest.user_id == user_id,
            TopupRequest.status == TopupRequestStatus.PENDING,
        )
        .values(
            proof_image_url=proof_url.strip(),
            status=TopupRequestStatus.UNDER_REVIEW,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFoundError("Topup request not found or already processed")
    await db.commit()
    return topup_request_to_dict(await _load_request(request_id, db))


async def _review(
    request_id: str,
    target: TopupRequestStatus,
    admin_id: str,
    notes: Optional[str],
    db: AsyncSession,
) -> TopupRequest:
    """Move an UNDER_REVIEW request to ``target``; only one reviewer can win."""
    result = await db.execute(
        update(TopupRequest)
        .where(
            TopupRequest.id == request_id,
            TopupRequest.status == TopupRequestStatus.UNDER_REVIEW,
        )
        .values(
            status=target,
            reviewed_by=admin_id,
            review_notes=notes,
            reviewed_at=utcnow(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        await _load_request(request_id, db)
        raise StateConflictError("Request is not under review")
    return await _load_request(request_id, db)


async def approve_topup_request(
    request_id: str,
    admin_id: str,
    db: AsyncSession,
    *,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    request = await _review(request_id, TopupRequestStatus.APPROVED, admin_id, notes, db)
    try:
        payment = await wallet_service.credit(
            request.user_id,
            request.amount,
            db,
            description="Manual Topup by Admin",
            payment_method="manual_admin",
            actor_id=admin_id,
            notes=notes,
        )
        request.payment_history_id = payment.id
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Topup request %s approved by %s", request_id, admin_id)
    return topup_request_to_dict(request)


async def reject_topup_request(
    request_id: str,
    admin_id: str,
    reason: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    request = await _review(request_id, TopupRequestStatus.REJECTED, admin_id, reason, db)
    await db.commit()
    logger.info("Topup request %s rejected by %s", request_id, admin_id)
    return topup_request_to_dict(request)


async def get_topup_request(request_id: str, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(TopupRequest).where(TopupRequest.id == request_id, TopupRequest.user_id == user_id)
    )
    request = result.scalar_one_or_none()
    if not request:
        raise NotFoundError("Topup request not found")
    return topup_request_to_dict(request)


async def list_user_topup_requests(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 20,
    offset: int = 0,
) -> Dict[str, Any]:
    result = await db.execute(
        select(TopupRequest)
        .where(TopupRequest.user_id == user_id)
        .order_by(TopupRequest.created_at.desc())
        .offset(max(offset, 0))
        .limit(max(limit, 1))
    )
    total = int(
        (await db.execute(select(func.count(TopupRequest.id)).where(TopupRequest.user_id == user_id))).scalar() or 0
    )
    return {
        "requests": [topup_request_to_dict(request) for request in result.scalars().all()],
        "total": total,
        "has_more": offset + limit < total,
    }


async def list_topup_requests(
    db: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    status: Optional[TopupRequestStatus] = None,
) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    query = select(TopupRequest, User).join(User, User.id == TopupRequest.user_id)
    count_query = select(func.count(TopupRequest.id))
    if status is not None:
        query = query.where(TopupRequest.status == status)
        count_query = count_query.where(TopupRequest.status == status)

    result = await db.execute(
        query.order_by(TopupRequest.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    total = int((await db.execute(count_query)).scalar() or 0)
    return {
        "requests": [
            {
                **topup_request_to_dict(request),
                "user": {"id": user.id, "email": user.email, "full_name": user.full_name},
            }
            for request, user in result.all()
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
            "has_next": page * limit < total,
            "has_prev": page > 1,
        },
    }


# Automatic (gateway) flow


async def calculate_automatic_topup(
    user_id: str,
    amount: Any,
    db: AsyncSession,
    *,
    promo_code: Optional[str] = None,
) -> Dict[str, Any]:
    """Price preview: ``final = base + fee - discount``."""
    base_amount = _check_minimum(amount)
    processing_fee = int(settings.TOPUP_PROCESSING_FEE)
    discount_amount = 0
    applied_promo = None
    promo_error = None

    if promo_code:
        validation = await promo_service.validate_promo_code(promo_code, base_amount, user_id, db)
        if validation.is_valid:
            discount_amount = validation.discount_amount
            applied_promo = validation.promo_code
        else:
            promo_error = validation.error_message

    final_amount = base_amount + processing_fee - discount_amount
    return {
        "base_amount": base_amount,
        "base_amount_formatted": format_idr(base_amount),
        "processing_fee": processing_fee,
        "processing_fee_formatted": format_idr(processing_fee),
        "discount_amount": discount_amount,
        "discount_amount_formatted": format_idr(discount_amount),
        "final_amount": final_amount,
        "final_amount_formatted": format_idr(final_amount),
        "applied_promo": promo_service.promo_to_dict(applied_promo),
        "promo_error": promo_error,
    }


async def _log_gateway_failure(db: AsyncSession, user_id: Optional[str], endpoint: str, exc: GatewayError) -> None:
    await log_api_call(
        db,
        endpoint=endpoint,
        status=ApiCallStatus.FAILED,
        user_id=user_id,
        model_used="midtrans",
        error_message=exc.message,
        error_code=exc.code,
    )


async def process_automatic_topup(
    user_id: str,
    amount: Any,
    db: AsyncSession,
    gateway: MidtransClient,
    *,
    promo_code: Optional[str] = None,
) -> Dict[str, Any]:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    calculation = await calculate_automatic_topup(user_id, amount, db, promo_code=promo_code)
    if calculation["promo_error"]:
        raise BusinessRuleError(calculation["promo_error"])
    if calculation["final_amount"] <= 0:
        raise BusinessRuleError("Discount exceeds the top-up amount")

    try:
        snap = await gateway.create_topup_snap_token(
            user_id,
            calculation["final_amount"],
            full_name=user.full_name,
            email=user.email,
        )
    except GatewayError as exc:
        await _log_gateway_failure(db, user_id, "/topup/automatic/process", exc)
        raise

    applied = calculation["applied_promo"]
    notes = None
    if applied:
        notes = (
            f"Promo {applied['code']}: discount {calculation['discount_amount_formatted']}, "
            f"paid {calculation['final_amount_formatted']}"
        )
    payment = PaymentHistory(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=PaymentType.WALLET_TOPUP,
        amount=calculation["base_amount"],
        description="Automatic Topup by Midtrans",
        status=PaymentStatus.PENDING,
        payment_method=AUTOMATIC_PAYMENT_METHOD,
        external_id=snap["order_id"],
        promo_code_id=applied["id"] if applied else None,
        discount_amount=calculation["discount_amount"],
        notes=notes,
    )
    db.add(payment)
    await db.commit()
    logger.info(
        "Automatic topup order %s created for user %s (base=%s, charged=%s)",
        snap["order_id"],
        user_id,
        calculation["base_amount"],
        calculation["final_amount"],
    )
    return {
        "snap_token": snap["snap_token"],
        "redirect_url": snap["redirect_url"],
        "order_id": snap["order_id"],
        "payment_id": payment.id,
        "calculation": calculation,
        "promo_code_id": payment.promo_code_id,
        "discount_amount": payment.discount_amount,
    }


async def _redeem_promo(payment: PaymentHistory, db: AsyncSession) -> None:
    try:
        async with db.begin_nested():
            await promo_service.apply_promo_code(
                payment.user_id,
                payment.promo_code_id,
                payment.id,
                payment.discount_amount,
                db,
            )
    except StateConflictError as exc:
        # The payment is already captured; the credit stands without the redemption record.
        logger.warning("Promo redemption skipped for payment %s: %s", payment.id, exc.message)


async def reconcile_gateway_payment(order_id: str, outcome: str, db: AsyncSession) -> Dict[str, Any]:
    """Apply a gateway outcome to the PENDING top-up row; repeats are no-ops."""
    result = await db.execute(
        select(PaymentHistory).where(
            PaymentHistory.external_id == order_id,
            PaymentHistory.type == PaymentType.WALLET_TOPUP,
        )
    )
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment record not found")

    if outcome == midtrans.PENDING:
        return {"success": False, "message": "Payment is still pending", "status": payment.status}

    if outcome == midtrans.SUCCESS:
        amount, user_id = payment.amount, payment.user_id
        try:
            settled = await wallet_service.settle_pending_credit(payment, db)
            if not settled:
                current_status = payment.status
                await db.rollback()
                return {"success": True, "message": "Payment already processed", "status": current_status}
            if payment.promo_code_id:
                await _redeem_promo(payment, db)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Topup order %s completed, credited %s to user %s", order_id, amount, user_id)
        return {
            "success": True,
            "message": "Payment completed successfully",
            "status": PaymentStatus.COMPLETED,
            "credited_amount": amount,
        }

    failed = await db.execute(
        update(PaymentHistory)
        .where(PaymentHistory.id == payment.id, PaymentHistory.status == PaymentStatus.PENDING)
        .values(status=PaymentStatus.FAILED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if failed.rowcount:
        logger.info("Topup order %s marked failed", order_id)
    return {"success": False, "message": "Payment failed or cancelled", "status": PaymentStatus.FAILED}


async def handle_midtrans_webhook(
    payload: Dict[str, Any],
    db: AsyncSession,
    gateway: MidtransClient,
) -> Dict[str, Any]:
    notification = gateway.parse_notification(payload)
    return await reconcile_gateway_payment(notification.order_id, notification.outcome, db)


async def check_topup_status(
    order_id: str,
    user_id: str,
    db: AsyncSession,
    gateway: MidtransClient,
) -> Dict[str, Any]:
    """Pull the gateway status for a still-PENDING order and reconcile it."""
    result = await db.execute(
        select(PaymentHistory).where(
            PaymentHistory.external_id == order_id,
            PaymentHistory.user_id == user_id,
            PaymentHistory.type == PaymentType.WALLET_TOPUP,
        )
    )
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment record not found")

    gateway_status = None
    if payment.status == PaymentStatus.PENDING:
        try:
            gateway_status = await gateway.get_transaction_status(order_id)
        except GatewayError as exc:
            await _log_gateway_failure(db, user_id, "/topup/status", exc)
            raise
        outcome = midtrans.classify_transaction(
            gateway_status.get("transaction_status", ""),
            gateway_status.get("fraud_status"),
        )
        await reconcile_gateway_payment(order_id, outcome, db)
        await db.refresh(payment)

    return {
        "payment": wallet_service.payment_to_dict(payment),
        "gateway_status": gateway_status.get("transaction_status") if gateway_status else None,
    }
