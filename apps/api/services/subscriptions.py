"""Subscription lifecycle: plan changes, renewal, cancellation and reporting.

Every write to a UserSubscription row goes through this module. The row
carries a version counter, so a renewal racing a user-initiated change fails
with ``ConcurrentUpdateError`` instead of silently overwriting.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.enums import (
    DEBIT_PAYMENT_TYPES,
    BillingCycle,
    PaymentStatus,
    PaymentType,
    SubscriptionStatus,
)
from models.payment_history import PaymentHistory
from models.subscription_plan import UNLIMITED_REQUESTS, SubscriptionPlan
from models.user_subscription import UserSubscription
from services import wallet as wallet_service
from services.clock import as_utc, utcnow
from services.errors import (
    BillingError,
    BusinessRuleError,
    ConcurrentUpdateError,
    InsufficientFundsError,
    NotFoundError,
    StateConflictError,
)
from services.formatting import format_idr
from services.plans import get_plan, plan_to_dict
from services.usage import reconcile_usage

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


def add_billing_cycle(start: datetime, billing_cycle: BillingCycle) -> datetime:
    """One calendar month or year after ``start``; month ends clamp (Jan 31 -> Feb 28)."""
    if BillingCycle(billing_cycle) == BillingCycle.YEARLY:
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


def _cycle_label(billing_cycle: BillingCycle) -> str:
    return "Yearly" if BillingCycle(billing_cycle) == BillingCycle.YEARLY else "Monthly"


# Plan change kinds. Each carries the target plan and the price to charge.


@dataclass(frozen=True)
class NewSubscription:
    plan: SubscriptionPlan
    billing_cycle: BillingCycle
    price: int
    kind: str = "new_subscription"


@dataclass(frozen=True)
class Upgrade:
    plan: SubscriptionPlan
    billing_cycle: BillingCycle
    price: int
    current_price: int
    kind: str = "upgrade"


@dataclass(frozen=True)
class Downgrade:
    plan: SubscriptionPlan
    billing_cycle: BillingCycle
    price: int
    current_price: int
    days_remaining: int
    kind: str = "downgrade"


@dataclass(frozen=True)
class CycleChange:
    plan: SubscriptionPlan
    billing_cycle: BillingCycle
    price: int
    current_price: int
    kind: str = "cycle_change"


@dataclass(frozen=True)
class SamePlan:
    plan: SubscriptionPlan
    billing_cycle: BillingCycle
    price: int
    kind: str = "same_plan"


PlanChange = Union[NewSubscription, Upgrade, Downgrade, CycleChange, SamePlan]


def days_remaining(subscription: UserSubscription, now: datetime) -> int:
    seconds = (as_utc(subscription.current_period_end) - now).total_seconds()
    return max(math.ceil(seconds / 86400), 0)


def classify_plan_change(
    subscription: Optional[UserSubscription],
    new_plan: SubscriptionPlan,
    billing_cycle: BillingCycle,
    now: datetime,
) -> PlanChange:
    """Tag a requested plan/cycle against the caller's ACTIVE subscription."""
    billing_cycle = BillingCycle(billing_cycle)
    price = new_plan.price_for(billing_cycle)
    if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
        return NewSubscription(plan=new_plan, billing_cycle=billing_cycle, price=price)

    if subscription.plan_id == new_plan.id and subscription.billing_cycle == billing_cycle:
        return SamePlan(plan=new_plan, billing_cycle=billing_cycle, price=price)

    current_price = subscription.plan.price_for(subscription.billing_cycle)
    if price < current_price:
        return Downgrade(
            plan=new_plan,
            billing_cycle=billing_cycle,
            price=price,
            current_price=current_price,
            days_remaining=days_remaining(subscription, now),
        )
    if subscription.plan_id == new_plan.id:
        return CycleChange(plan=new_plan, billing_cycle=billing_cycle, price=price, current_price=current_price)
    return Upgrade(plan=new_plan, billing_cycle=billing_cycle, price=price, current_price=current_price)


async def get_subscription(user_id: str, db: AsyncSession) -> Optional[UserSubscription]:
    result = await db.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
    return result.scalar_one_or_none()


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except StaleDataError as exc:
        await db.rollback()
        raise ConcurrentUpdateError("Subscription was modified concurrently, please retry") from exc


def subscription_to_dict(subscription: UserSubscription) -> Dict[str, Any]:
    limit = subscription.requests_limit
    used = subscription.requests_used
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan_id": subscription.plan_id,
        "plan": plan_to_dict(subscription.plan) if subscription.plan else None,
        "billing_cycle": subscription.billing_cycle,
        "status": subscription.status,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "requests_used": used,
        "requests_limit": limit,
        "usage_percentage": round(used / limit * 100) if limit > 0 else 0,
        "requests_remaining": UNLIMITED_REQUESTS if limit == UNLIMITED_REQUESTS else max(0, limit - used),
        "auto_renew": subscription.auto_renew,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": subscription.canceled_at,
        "version": subscription.version,
    }


async def _reconciled_dict(subscription: UserSubscription, db: AsyncSession) -> Dict[str, Any]:
    await reconcile_usage(subscription, db)
    return subscription_to_dict(subscription)


async def validate_upgrade_request(
    user_id: str,
    plan_id: str,
    billing_cycle: BillingCycle,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> PlanChange:
    """Return the classified change or raise the first rule it breaks."""
    current = as_utc(now) or utcnow()
    new_plan = await get_plan(plan_id, db)
    if not new_plan:
        raise NotFoundError("Selected plan is not available")

    subscription = await get_subscription(user_id, db)
    change = classify_plan_change(subscription, new_plan, billing_cycle, current)
    if isinstance(change, SamePlan):
        raise BusinessRuleError("You are already subscribed to this plan")

    wallet = await wallet_service.get_or_create_wallet(user_id, db)
    if wallet.balance < change.price:
        raise InsufficientFundsError(
            f"Insufficient wallet balance. Required: {format_idr(change.price)}, "
            f"Available: {format_idr(wallet.balance)}"
        )

    if isinstance(change, Downgrade) and change.days_remaining > settings.DOWNGRADE_LOCK_DAYS:
        raise BusinessRuleError(
            f"Cannot downgrade with {change.days_remaining} days remaining in current period. "
            "Please wait until renewal or contact support."
        )
    return change


async def upgrade_plan(
    user_id: str,
    plan_id: str,
    billing_cycle: BillingCycle,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Charge the wallet and start a fresh period on the new plan, atomically."""
    current = as_utc(now) or utcnow()
    billing_cycle = BillingCycle(billing_cycle)
    change = await validate_upgrade_request(user_id, plan_id, billing_cycle, db, now=current)
    plan = change.plan

    try:
        payment = None
        if change.price > 0:
            payment = await wallet_service.debit(
                user_id,
                change.price,
                db,
                description=f"Subscription Upgrade to {plan.display_name} ({_cycle_label(billing_cycle)})",
                payment_method="wallet_balance",
                payment_type=PaymentType.SUBSCRIPTION,
                plan_id=plan.id,
            )

        subscription = await get_subscription(user_id, db)
        if subscription is None:
            subscription = UserSubscription(id=str(uuid.uuid4()), user_id=user_id)
            db.add(subscription)
        subscription.plan_id = plan.id
        subscription.plan = plan
        subscription.billing_cycle = billing_cycle
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.current_period_start = current
        subscription.current_period_end = add_billing_cycle(current, billing_cycle)
        subscription.requests_used = 0
        subscription.requests_limit = plan.monthly_requests
        subscription.auto_renew = True
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        await _commit(db)
    except BillingError:
        await db.rollback()
        raise
    except Exception:
        await db.rollback()
        logger.exception("Plan change failed for user %s", user_id)
        raise

    wallet = await wallet_service.get_or_create_wallet(user_id, db)
    logger.info("User %s %s to plan %s (%s)", user_id, change.kind, plan.name, billing_cycle.value)
    return {
        "change": change.kind,
        "subscription": await _reconciled_dict(subscription, db),
        "payment": wallet_service.payment_to_dict(payment) if payment else None,
        "deducted_amount": change.price,
        "remaining_balance": wallet.balance,
        "remaining_balance_formatted": format_idr(wallet.balance),
    }


async def can_user_afford_plan(
    user_id: str,
    plan_id: str,
    billing_cycle: BillingCycle,
    db: AsyncSession,
) -> Dict[str, Any]:
    plan = await get_plan(plan_id, db, active_only=False)
    if not plan:
        raise NotFoundError("Plan not found")
    wallet = await wallet_service.get_or_create_wallet(user_id, db)
    price = plan.price_for(billing_cycle)
    return {
        "can_afford": wallet.balance >= price,
        "price": price,
        "balance": wallet.balance,
        "shortfall": max(price - wallet.balance, 0),
    }


async def get_upgrade_preview(
    user_id: str,
    plan_id: str,
    billing_cycle: BillingCycle,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = as_utc(now) or utcnow()
    billing_cycle = BillingCycle(billing_cycle)
    new_plan = await get_plan(plan_id, db, active_only=False)
    if not new_plan:
        raise NotFoundError("Plan not found")

    subscription = await get_subscription(user_id, db)
    wallet = await wallet_service.get_or_create_wallet(user_id, db)
    change = classify_plan_change(subscription, new_plan, billing_cycle, current)

    error_message = None
    try:
        await validate_upgrade_request(user_id, plan_id, billing_cycle, db, now=current)
    except BillingError as exc:
        error_message = exc.message

    remaining = wallet.balance - change.price
    current_plan = subscription.plan if subscription and subscription.plan else None
    return {
        "change": change.kind,
        "is_valid": error_message is None,
        "error_message": error_message,
        "current_plan": plan_to_dict(current_plan) if current_plan else None,
        "new_plan": plan_to_dict(new_plan),
        "pricing": {
            "amount": change.price,
            "amount_formatted": format_idr(change.price),
            "billing_cycle": billing_cycle,
        },
        "period": {
            "start": current,
            "end": add_billing_cycle(current, billing_cycle),
        },
        "wallet": {
            "current_balance": wallet.balance,
            "current_balance_formatted": format_idr(wallet.balance),
            "remaining_after_upgrade": remaining,
            "remaining_after_upgrade_formatted": format_idr(remaining),
            "can_afford": remaining >= 0,
        },
    }


async def toggle_auto_renew(user_id: str, enabled: bool, db: AsyncSession) -> Dict[str, Any]:
    subscription = await get_subscription(user_id, db)
    if not subscription:
        raise NotFoundError("Subscription not found")
    if subscription.status in TERMINAL_STATUSES:
        raise StateConflictError(f"Cannot change auto-renew on a {subscription.status.value.lower()} subscription")

    subscription.auto_renew = bool(enabled)
    subscription.cancel_at_period_end = not enabled
    await _commit(db)
    return await _reconciled_dict(subscription, db)


async def process_auto_renew(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Renew when inside the renewal window; otherwise report and do nothing.

    The new period starts at the old ``current_period_end`` so late sweeps
    never shift the billing anchor.
    """
    current = as_utc(now) or utcnow()
    subscription = await get_subscription(user_id, db)
    if not subscription or not subscription.auto_renew or subscription.status != SubscriptionStatus.ACTIVE:
        return {"success": False, "message": "Auto-renew not applicable"}

    period_end = as_utc(subscription.current_period_end)
    if current < period_end - timedelta(hours=settings.RENEWAL_WINDOW_HOURS):
        return {"success": False, "message": "Not yet due for renewal"}

    plan = subscription.plan
    billing_cycle = BillingCycle(subscription.billing_cycle)
    amount = plan.price_for(billing_cycle)

    try:
        if amount > 0:
            await wallet_service.debit(
                user_id,
                amount,
                db,
                description=f"Subscription Auto-Renewal - {plan.display_name} ({_cycle_label(billing_cycle)})",
                payment_method="wallet_balance_auto",
                payment_type=PaymentType.SUBSCRIPTION,
                plan_id=plan.id,
            )
    except InsufficientFundsError:
        subscription.auto_renew = False
        subscription.cancel_at_period_end = True
        subscription.status = SubscriptionStatus.SUSPENDED
        await _commit(db)
        logger.warning("Auto-renew for user %s suspended: insufficient balance for %s", user_id, amount)
        return {
            "success": False,
            "message": "Insufficient wallet balance for auto-renewal",
            "action": "disabled_auto_renew",
        }

    new_end = add_billing_cycle(period_end, billing_cycle)
    subscription.current_period_start = period_end
    subscription.current_period_end = new_end
    subscription.requests_used = 0
    subscription.status = SubscriptionStatus.ACTIVE
    await _commit(db)
    logger.info("Auto-renewed user %s on %s until %s", user_id, plan.name, new_end.isoformat())
    return {
        "success": True,
        "message": "Auto-renewal completed successfully",
        "renewed_until": new_end,
        "charged_amount": amount,
    }


async def cancel_subscription(
    user_id: str,
    db: AsyncSession,
    *,
    immediately: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = as_utc(now) or utcnow()
    subscription = await get_subscription(user_id, db)
    if not subscription:
        raise NotFoundError("Subscription not found")
    if subscription.status in TERMINAL_STATUSES:
        raise StateConflictError(f"Subscription is already {subscription.status.value.lower()}")

    subscription.auto_renew = False
    subscription.canceled_at = current
    if immediately:
        subscription.status = SubscriptionStatus.CANCELED
        message = "Subscription cancelled immediately"
    else:
        subscription.cancel_at_period_end = True
        end = as_utc(subscription.current_period_end)
        message = f"Subscription will be cancelled on {end.date().isoformat()}"
    await _commit(db)
    logger.info("User %s cancelled subscription (immediately=%s)", user_id, immediately)
    return {**(await _reconciled_dict(subscription, db)), "message": message}


async def get_current_subscription(user_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
    subscription = await get_subscription(user_id, db)
    if not subscription:
        return None
    return await _reconciled_dict(subscription, db)


async def get_billing_history(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    result = await db.execute(
        select(PaymentHistory)
        .where(PaymentHistory.user_id == user_id)
        .order_by(PaymentHistory.created_at.desc())
        .offset(max(offset, 0))
        .limit(max(limit, 1))
    )
    payments = result.scalars().all()
    total = int(
        (await db.execute(select(func.count(PaymentHistory.id)).where(PaymentHistory.user_id == user_id))).scalar()
        or 0
    )
    return {
        "payments": [wallet_service.payment_to_dict(payment) for payment in payments],
        "total": total,
        "has_more": offset + limit < total,
    }


async def get_billing_overview(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    subscription = await get_current_subscription(user_id, db)
    history = await get_billing_history(user_id, db, limit=5)
    spent = await db.execute(
        select(func.coalesce(func.sum(PaymentHistory.amount), 0)).where(
            PaymentHistory.user_id == user_id,
            PaymentHistory.status == PaymentStatus.COMPLETED,
            PaymentHistory.type.in_(DEBIT_PAYMENT_TYPES),
        )
    )
    total_spent = int(spent.scalar() or 0)
    return {
        "current_subscription": subscription,
        "next_billing_date": subscription["current_period_end"] if subscription else None,
        "total_spent": total_spent,
        "total_spent_formatted": format_idr(total_spent),
        "recent_payments": history["payments"],
    }
