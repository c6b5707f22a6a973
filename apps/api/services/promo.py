"""Promo code validation, redemption and admin management."""

from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.enums import DiscountType
from models.promo_code import UNLIMITED_USAGE, PromoCode
from models.promo_usage import PromoUsage
from services.clock import as_utc, utcnow
from services.errors import (
    BillingValidationError,
    BusinessRuleError,
    NotFoundError,
    StateConflictError,
)
from services.formatting import format_idr, to_idr

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name",
    "description",
    "discount_value",
    "max_usage",
    "max_usage_per_user",
    "is_active",
    "valid_from",
    "valid_until",
    "min_amount",
    "max_discount",
)


@dataclass
class PromoValidation:
    is_valid: bool
    promo_code: Optional[PromoCode] = None
    discount_amount: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.is_valid:
            return {"is_valid": False, "error_message": self.error_message}
        return {
            "is_valid": True,
            "promo_code": promo_to_dict(self.promo_code),
            "discount_amount": self.discount_amount,
            "discount_amount_formatted": format_idr(self.discount_amount),
        }


def normalize_code(code: str) -> str:
    return str(code or "").strip().upper()


def promo_to_dict(promo: Optional[PromoCode]) -> Optional[Dict[str, Any]]:
    if promo is None:
        return None
    return {
        "id": promo.id,
        "code": promo.code,
        "name": promo.name,
        "description": promo.description,
        "discount_type": promo.discount_type,
        "discount_value": promo.discount_value,
        "max_usage": promo.max_usage,
        "max_usage_per_user": promo.max_usage_per_user,
        "valid_from": promo.valid_from,
        "valid_until": promo.valid_until,
        "min_amount": promo.min_amount,
        "max_discount": promo.max_discount,
        "current_usage": promo.current_usage,
        "is_active": promo.is_active,
        "created_at": promo.created_at,
    }


def compute_discount(promo: PromoCode, amount: int) -> int:
    """Discount for ``amount``; percentage discounts are capped by ``max_discount``.

    The result is not clamped to ``amount``: callers decide what a discount
    larger than the purchase means for them.
    """
    if DiscountType(promo.discount_type) == DiscountType.PERCENTAGE:
        discount = to_idr(amount * promo.discount_value / 100)
        if promo.max_discount is not None and discount > promo.max_discount:
            discount = int(promo.max_discount)
        return discount
    return int(promo.discount_value)


def _check_discount_value(discount_type: DiscountType, value: int) -> None:
    if discount_type == DiscountType.PERCENTAGE and not (0 < value <= 100):
        raise BillingValidationError("Percentage discount must be between 1 and 100")
    if discount_type == DiscountType.FIXED and value <= 0:
        raise BillingValidationError("Fixed discount must be greater than 0")


def _check_window(valid_from: datetime, valid_until: datetime) -> None:
    if as_utc(valid_from) >= as_utc(valid_until):
        raise BillingValidationError("Valid from date must be before valid until date")


async def count_user_redemptions(user_id: str, promo_code_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(PromoUsage.id)).where(
            PromoUsage.user_id == user_id,
            PromoUsage.promo_code_id == promo_code_id,
        )
    )
    return int(result.scalar() or 0)


async def validate_promo_code(
    code: str,
    amount: Any,
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> PromoValidation:
    """Evaluate the promo rules in order and stop at the first failure."""
    current = as_utc(now) or utcnow()
    try:
        value = to_idr(amount)
    except (TypeError, ValueError) as exc:
        raise BillingValidationError("Amount must be a number") from exc

    result = await db.execute(
        select(PromoCode).where(
            PromoCode.code == normalize_code(code),
            PromoCode.is_active.is_(True),
            PromoCode.valid_from <= current,
            PromoCode.valid_until >= current,
        )
    )
    promo = result.scalar_one_or_none()
    if not promo:
        return PromoValidation(is_valid=False, error_message="Invalid or expired promo code")

    if value < promo.min_amount:
        return PromoValidation(
            is_valid=False,
            error_message=f"Minimum amount is {format_idr(promo.min_amount)}",
        )

    if promo.max_usage != UNLIMITED_USAGE and promo.current_usage >= promo.max_usage:
        return PromoValidation(is_valid=False, error_message="Promo code usage limit exceeded")

    used = await count_user_redemptions(user_id, promo.id, db)
    if used >= promo.max_usage_per_user:
        return PromoValidation(is_valid=False, error_message="You have already used this promo code")

    return PromoValidation(is_valid=True, promo_code=promo, discount_amount=compute_discount(promo, value))


async def apply_promo_code(
    user_id: str,
    promo_code_id: str,
    payment_history_id: str,
    discount_amount: int,
    db: AsyncSession,
) -> PromoUsage:
    """Record one redemption and bump ``current_usage`` (no commit).

    The conditional UPDATE takes the promo row lock first, so the per-user
    count below sees every redemption committed before it.
    """
    result = await db.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo_code_id,
            or_(PromoCode.max_usage == UNLIMITED_USAGE, PromoCode.current_usage < PromoCode.max_usage),
        )
        .values(current_usage=PromoCode.current_usage + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise StateConflictError("Promo code usage limit exceeded")

    promo = await db.get(PromoCode, promo_code_id)
    await db.refresh(promo)
    used = await count_user_redemptions(user_id, promo_code_id, db)
    if used >= promo.max_usage_per_user:
        raise StateConflictError("You have already used this promo code")

    usage = PromoUsage(
        id=str(uuid.uuid4()),
        user_id=user_id,
        promo_code_id=promo_code_id,
        payment_history_id=payment_history_id,
        discount_amount=int(discount_amount),
    )
    db.add(usage)
    await db.flush()
    logger.info("Promo %s redeemed by user=%s discount=%s", promo.code, user_id, discount_amount)
    return usage


async def create_promo_code(data: Dict[str, Any], admin_id: str, db: AsyncSession) -> Dict[str, Any]:
    code = normalize_code(data.get("code", ""))
    if not code:
        raise BillingValidationError("Promo code is required")

    existing = await db.execute(select(PromoCode.id).where(PromoCode.code == code))
    if existing.scalar_one_or_none():
        raise StateConflictError("Promo code already exists")

    discount_type = DiscountType(data["discount_type"])
    discount_value = int(data["discount_value"])
    _check_window(data["valid_from"], data["valid_until"])
    _check_discount_value(discount_type, discount_value)

    promo = PromoCode(
        id=str(uuid.uuid4()),
        code=code,
        name=data["name"],
        description=data.get("description"),
        discount_type=discount_type,
        discount_value=discount_value,
        max_usage=int(data.get("max_usage", UNLIMITED_USAGE)),
        max_usage_per_user=int(data.get("max_usage_per_user", 1)),
        valid_from=data["valid_from"],
        valid_until=data["valid_until"],
        min_amount=int(data.get("min_amount") or 0),
        max_discount=data.get("max_discount"),
        is_active=bool(data.get("is_active", True)),
        created_by=admin_id,
    )
    db.add(promo)
    await db.commit()
    return promo_to_dict(promo)


async def _get_promo_or_404(promo_id: str, db: AsyncSession) -> PromoCode:
    promo = await db.get(PromoCode, promo_id)
    if not promo:
        raise NotFoundError("Promo code not found")
    return promo


async def update_promo_code(promo_id: str, data: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    promo = await _get_promo_or_404(promo_id, db)
    changes = {key: value for key, value in data.items() if key in UPDATABLE_FIELDS and value is not None}

    _check_window(changes.get("valid_from", promo.valid_from), changes.get("valid_until", promo.valid_until))
    if "discount_value" in changes:
        _check_discount_value(DiscountType(promo.discount_type), int(changes["discount_value"]))

    for key, value in changes.items():
        setattr(promo, key, value)
    await db.commit()
    return promo_to_dict(promo)


async def delete_promo_code(promo_id: str, db: AsyncSession) -> Dict[str, Any]:
    promo = await _get_promo_or_404(promo_id, db)
    if promo.current_usage > 0:
        raise BusinessRuleError(
            "Cannot delete promo code that has been used. Consider deactivating it instead."
        )
    await db.delete(promo)
    await db.commit()
    return {"message": "Promo code deleted successfully"}


async def _usages_for(promo_ids: List[str], db: AsyncSession) -> List[PromoUsage]:
    if not promo_ids:
        return []
    result = await db.execute(
        select(PromoUsage)
        .where(PromoUsage.promo_code_id.in_(promo_ids))
        .order_by(PromoUsage.created_at.desc())
    )
    return list(result.scalars().all())


async def list_promo_codes(
    db: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    active_only: bool = False,
) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    query = select(PromoCode)
    count_query = select(func.count(PromoCode.id))
    if active_only:
        query = query.where(PromoCode.is_active.is_(True))
        count_query = count_query.where(PromoCode.is_active.is_(True))

    result = await db.execute(
        query.order_by(PromoCode.is_active.desc(), PromoCode.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    promos = result.scalars().all()
    total = int((await db.execute(count_query)).scalar() or 0)

    given: Dict[str, int] = {}
    for usage in await _usages_for([promo.id for promo in promos], db):
        given[usage.promo_code_id] = given.get(usage.promo_code_id, 0) + usage.discount_amount

    return {
        "promo_codes": [
            {
                **promo_to_dict(promo),
                "total_discount_given": given.get(promo.id, 0),
                "total_discount_given_formatted": format_idr(given.get(promo.id, 0)),
            }
            for promo in promos
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


async def get_promo_code(promo_id: str, db: AsyncSession) -> Dict[str, Any]:
    promo = await _get_promo_or_404(promo_id, db)
    usages = await _usages_for([promo.id], db)
    return {
        **promo_to_dict(promo),
        "usages": [
            {
                "id": usage.id,
                "user_id": usage.user_id,
                "payment_history_id": usage.payment_history_id,
                "discount_amount": usage.discount_amount,
                "created_at": usage.created_at,
            }
            for usage in usages
        ],
    }


async def get_promo_code_stats(promo_id: str, db: AsyncSession) -> Dict[str, Any]:
    promo = await _get_promo_or_404(promo_id, db)
    usages = await _usages_for([promo.id], db)

    total_discount = sum(usage.discount_amount for usage in usages)
    average = total_discount / promo.current_usage if promo.current_usage > 0 else 0
    by_day = Counter(as_utc(usage.created_at).date().isoformat() for usage in usages if usage.created_at)
    return {
        **promo_to_dict(promo),
        "stats": {
            "total_usage": promo.current_usage,
            "total_discount_given": total_discount,
            "total_discount_given_formatted": format_idr(total_discount),
            "unique_users": len({usage.user_id for usage in usages}),
            "average_discount_per_usage": to_idr(average),
            "average_discount_per_usage_formatted": format_idr(average),
            "usage_by_day": [{"date": day, "count": count} for day, count in sorted(by_day.items())],
        },
    }
