"""Wallet ledger: the only code path that changes a wallet balance.

``credit`` and ``debit`` flush inside the caller's transaction so they can be
combined with subscription or top-up writes; ``add_funds`` and ``deduct_funds``
are the standalone, committing variants used by admin endpoints. Every balance
change writes exactly one PaymentHistory row (or settles an existing PENDING
row for gateway top-ups).
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import func, inspect, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.enums import (
    CREDIT_PAYMENT_TYPES,
    DEBIT_PAYMENT_TYPES,
    PaymentStatus,
    PaymentType,
)
from models.payment_history import PaymentHistory
from models.user import User
from models.wallet import Wallet
from services.clock import utcnow
from services.errors import BillingValidationError, InsufficientFundsError
from services.formatting import format_idr, to_idr

logger = logging.getLogger(__name__)

WALLET_TRANSACTION_TYPES = (PaymentType.WALLET_TOPUP, PaymentType.SUBSCRIPTION, PaymentType.DEDUCTION)


def _positive_amount(amount: Any) -> int:
    try:
        value = to_idr(amount)
    except (TypeError, ValueError) as exc:
        raise BillingValidationError("Amount must be a number") from exc
    if value <= 0:
        raise BillingValidationError("Amount must be greater than 0")
    return value


def wallet_to_dict(wallet: Wallet) -> Dict[str, Any]:
    return {
        "id": wallet.id,
        "user_id": wallet.user_id,
        "balance": wallet.balance,
        "balance_formatted": format_idr(wallet.balance),
        "total_deposited": wallet.total_deposited,
        "total_deposited_formatted": format_idr(wallet.total_deposited),
        "total_spent": wallet.total_spent,
        "total_spent_formatted": format_idr(wallet.total_spent),
        "updated_at": wallet.updated_at,
    }


def _plan_label(payment: PaymentHistory) -> Optional[Dict[str, Any]]:
    # Never trigger a lazy load from async code.
    if "plan" in inspect(payment).unloaded or payment.plan is None:
        return None
    return {"name": payment.plan.name, "display_name": payment.plan.display_name}


def payment_to_dict(payment: PaymentHistory) -> Dict[str, Any]:
    is_credit = payment.type in CREDIT_PAYMENT_TYPES
    formatted = format_idr(payment.amount)
    return {
        "id": payment.id,
        "type": payment.type,
        "amount": payment.amount,
        "amount_formatted": formatted,
        "amount_display": f"+{formatted}" if is_credit else f"-{formatted}",
        "is_credit": is_credit,
        "is_debit": payment.type in DEBIT_PAYMENT_TYPES,
        "status": payment.status,
        "description": payment.description,
        "payment_method": payment.payment_method,
        "external_id": payment.external_id,
        "plan_id": payment.plan_id,
        "plan": _plan_label(payment),
        "promo_code_id": payment.promo_code_id,
        "discount_amount": payment.discount_amount,
        "notes": payment.notes,
        "processed_by": payment.processed_by,
        "created_at": payment.created_at,
    }


async def get_or_create_wallet(user_id: str, db: AsyncSession) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet:
        return wallet

    try:
        async with db.begin_nested():
            wallet = Wallet(
                id=str(uuid.uuid4()),
                user_id=user_id,
                balance=0,
                total_deposited=0,
                total_spent=0,
            )
            db.add(wallet)
    except IntegrityError:
        # Lost a creation race; the other transaction's row is authoritative.
        result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
        wallet = result.scalar_one()
    return wallet


async def _increment_balance(user_id: str, amount: int, db: AsyncSession) -> Wallet:
    wallet = await get_or_create_wallet(user_id, db)
    await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(
            balance=Wallet.balance + amount,
            total_deposited=Wallet.total_deposited + amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(wallet)
    return wallet


async def credit(
    user_id: str,
    amount: Any,
    db: AsyncSession,
    *,
    description: str,
    payment_method: str,
    payment_type: PaymentType = PaymentType.WALLET_TOPUP,
    actor_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> PaymentHistory:
    """Increase the balance and record a COMPLETED credit row (no commit)."""
    value = _positive_amount(amount)
    if payment_type not in CREDIT_PAYMENT_TYPES:
        raise BillingValidationError(f"{payment_type.value} is not a credit payment type")

    await _increment_balance(user_id, value, db)
    entry = PaymentHistory(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=payment_type,
        amount=value,
        description=description,
        status=PaymentStatus.COMPLETED,
        payment_method=payment_method,
        processed_by=actor_id,
        notes=notes,
    )
    db.add(entry)
    await db.flush()
    logger.info("Wallet credit user=%s amount=%s method=%s", user_id, value, payment_method)
    return entry


async def debit(
    user_id: str,
    amount: Any,
    db: AsyncSession,
    *,
    description: str,
    payment_method: str,
    payment_type: PaymentType = PaymentType.DEDUCTION,
    plan_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> PaymentHistory:
    """Decrease the balance and record a COMPLETED debit row (no commit).

    The balance check is part of the UPDATE's WHERE clause, so two concurrent
    debits can never both pass it and overdraw the wallet.
    """
    value = _positive_amount(amount)
    if payment_type not in DEBIT_PAYMENT_TYPES:
        raise BillingValidationError(f"{payment_type.value} is not a debit payment type")

    wallet = await get_or_create_wallet(user_id, db)
    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.balance >= value)
        .values(
            balance=Wallet.balance - value,
            total_spent=Wallet.total_spent + value,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(wallet)
    if result.rowcount == 0:
        raise InsufficientFundsError(
            f"Insufficient wallet balance. Required: {format_idr(value)}, "
            f"Available: {format_idr(wallet.balance)}"
        )

    entry = PaymentHistory(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=payment_type,
        amount=value,
        description=description,
        status=PaymentStatus.COMPLETED,
        payment_method=payment_method,
        plan_id=plan_id,
        processed_by=actor_id,
    )
    db.add(entry)
    await db.flush()
    logger.info("Wallet debit user=%s amount=%s method=%s", user_id, value, payment_method)
    return entry


async def settle_pending_credit(payment: PaymentHistory, db: AsyncSession) -> bool:
    """Flip a PENDING credit row to COMPLETED and credit its stored amount once.

    Returns False when the row was already settled or failed, which makes
    duplicate gateway notifications a no-op.
    """
    result = await db.execute(
        update(PaymentHistory)
        .where(
            PaymentHistory.id == payment.id,
            PaymentHistory.status == PaymentStatus.PENDING,
        )
        .values(status=PaymentStatus.COMPLETED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.refresh(payment)
    if result.rowcount == 0:
        return False

    await _increment_balance(payment.user_id, _positive_amount(payment.amount), db)
    logger.info("Settled pending credit payment=%s user=%s amount=%s", payment.id, payment.user_id, payment.amount)
    return True


async def add_funds(
    user_id: str,
    amount: Any,
    db: AsyncSession,
    *,
    description: Optional[str] = None,
    admin_id: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        entry = await credit(
            user_id,
            amount,
            db,
            description=description or "Manual Topup by Admin",
            payment_method="manual_admin",
            actor_id=admin_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    wallet = await get_or_create_wallet(user_id, db)
    return {"wallet": wallet_to_dict(wallet), "payment": payment_to_dict(entry)}


async def deduct_funds(
    user_id: str,
    amount: Any,
    db: AsyncSession,
    *,
    description: str,
    admin_id: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        entry = await debit(
            user_id,
            amount,
            db,
            description=description,
            payment_method="manual_admin",
            actor_id=admin_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    wallet = await get_or_create_wallet(user_id, db)
    return {
        "wallet": wallet_to_dict(wallet),
        "transaction": payment_to_dict(entry),
        "new_balance": format_idr(wallet.balance),
    }


async def get_wallet_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    wallet = await get_or_create_wallet(user_id, db)
    await db.commit()
    return wallet_to_dict(wallet)


async def get_wallet_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    filters = (
        PaymentHistory.user_id == user_id,
        PaymentHistory.type.in_(WALLET_TRANSACTION_TYPES),
    )
    result = await db.execute(
        select(PaymentHistory)
        .where(*filters)
        .order_by(PaymentHistory.created_at.desc())
        .offset(max(offset, 0))
        .limit(max(limit, 1))
    )
    rows = result.scalars().all()
    total = int((await db.execute(select(func.count(PaymentHistory.id)).where(*filters))).scalar() or 0)
    return {
        "transactions": [payment_to_dict(row) for row in rows],
        "total": total,
        "has_more": offset + limit < total,
    }


async def get_wallet_stats(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    summary = await get_wallet_summary(user_id, db)
    recent = await get_wallet_transactions(user_id, db, limit=5)

    last_topup_result = await db.execute(
        select(PaymentHistory)
        .where(
            PaymentHistory.user_id == user_id,
            PaymentHistory.type == PaymentType.WALLET_TOPUP,
            PaymentHistory.status == PaymentStatus.COMPLETED,
        )
        .order_by(PaymentHistory.created_at.desc())
        .limit(1)
    )
    last_topup = last_topup_result.scalar_one_or_none()
    return {
        **summary,
        "total_transactions": recent["total"],
        "last_top_up": payment_to_dict(last_topup) if last_topup else None,
        "recent_transactions": recent["transactions"],
    }


async def list_wallets(
    db: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    query = select(Wallet, User).join(User, User.id == Wallet.user_id)
    count_query = select(func.count(Wallet.id)).join(User, User.id == Wallet.user_id)
    needle = (search or "").strip()
    if needle:
        pattern = f"%{needle.lower()}%"
        condition = or_(func.lower(User.email).like(pattern), func.lower(User.full_name).like(pattern))
        query = query.where(condition)
        count_query = count_query.where(condition)

    result = await db.execute(
        query.order_by(Wallet.balance.desc(), Wallet.updated_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = int((await db.execute(count_query)).scalar() or 0)
    wallets = []
    for wallet, user in result.all():
        wallets.append(
            {
                **wallet_to_dict(wallet),
                "user": {"id": user.id, "email": user.email, "full_name": user.full_name, "role": user.role},
            }
        )
    return {
        "wallets": wallets,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
            "has_next": page * limit < total,
            "has_prev": page > 1,
        },
    }
