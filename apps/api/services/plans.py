"""Subscription plan catalog: seeding, listing and admin edits."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.enums import BillingCycle, PaymentStatus, PaymentType, SubscriptionStatus
from models.payment_history import PaymentHistory
from models.subscription_plan import UNLIMITED_REQUESTS, SubscriptionPlan
from models.user import User
from models.user_subscription import UserSubscription
from services.clock import as_utc, utcnow
from services.errors import BillingValidationError, NotFoundError
from services.formatting import format_idr

logger = logging.getLogger(__name__)

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "name": "FREE",
        "display_name": "Free",
        "description": "Try the platform with a small monthly allowance.",
        "monthly_requests": 50,
        "monthly_price": 0,
        "yearly_price": 0,
        "sort_order": 0,
    },
    {
        "name": "BASIC",
        "display_name": "Basic",
        "description": "For individuals with steady usage.",
        "monthly_requests": 750,
        "monthly_price": 99000,
        "yearly_price": 990000,
        "sort_order": 1,
    },
    {
        "name": "PRO",
        "display_name": "Pro",
        "description": "For teams and heavy usage.",
        "monthly_requests": 5000,
        "monthly_price": 299000,
        "yearly_price": 2990000,
        "sort_order": 2,
    },
    {
        "name": "ENTERPRISE",
        "display_name": "Enterprise",
        "description": "Unlimited requests.",
        "monthly_requests": UNLIMITED_REQUESTS,
        "monthly_price": 999000,
        "yearly_price": 9990000,
        "sort_order": 3,
    },
]

PLAN_UPDATABLE_FIELDS = (
    "display_name",
    "description",
    "monthly_requests",
    "monthly_price",
    "yearly_price",
    "is_active",
    "sort_order",
)


def plan_to_dict(plan: SubscriptionPlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "display_name": plan.display_name,
        "description": plan.description,
        "monthly_requests": plan.monthly_requests,
        "is_unlimited": plan.monthly_requests == UNLIMITED_REQUESTS,
        "monthly_price": plan.monthly_price,
        "monthly_price_formatted": format_idr(plan.monthly_price),
        "yearly_price": plan.yearly_price,
        "yearly_price_formatted": format_idr(plan.yearly_price),
        "is_active": plan.is_active,
        "sort_order": plan.sort_order,
    }


async def seed_default_plans(db: AsyncSession) -> int:
    """Insert any missing default plan. Existing rows are left untouched."""
    result = await db.execute(select(SubscriptionPlan.name))
    existing = set(result.scalars().all())
    created = 0
    for data in DEFAULT_PLANS:
        if data["name"] in existing:
            continue
        db.add(SubscriptionPlan(id=str(uuid.uuid4()), is_active=True, **data))
        created += 1
    if created:
        await db.commit()
        logger.info("Seeded %s default subscription plans", created)
    return created


async def get_plan(plan_id: str, db: AsyncSession, *, active_only: bool = True) -> Optional[SubscriptionPlan]:
    query = select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id)
    if active_only:
        query = query.where(SubscriptionPlan.is_active.is_(True))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def list_plans(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.sort_order.asc())
    )
    return [plan_to_dict(plan) for plan in result.scalars().all()]


async def get_plan_hierarchy(db: AsyncSession) -> List[Dict[str, Any]]:
    plans = await list_plans(db)
    return [{**plan, "tier": index} for index, plan in enumerate(plans)]


async def list_plans_with_stats(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.sort_order.asc()))
    plans = result.scalars().all()
    active_by_plan = await _subscriptions_by_plan(db, active_only=True)
    return [{**plan_to_dict(plan), "active_subscriptions": active_by_plan.get(plan.id, 0)} for plan in plans]


async def update_plan(plan_id: str, data: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    plan = await get_plan(plan_id, db, active_only=False)
    if not plan:
        raise NotFoundError("Plan not found")

    changes = {key: value for key, value in data.items() if key in PLAN_UPDATABLE_FIELDS and value is not None}
    for price_field in ("monthly_price", "yearly_price"):
        if price_field in changes and int(changes[price_field]) < 0:
            raise BillingValidationError(f"{price_field} cannot be negative")
    if "monthly_requests" in changes:
        requests = int(changes["monthly_requests"])
        if requests < 0 and requests != UNLIMITED_REQUESTS:
            raise BillingValidationError("monthly_requests must be >= 0 or -1 for unlimited")

    for key, value in changes.items():
        setattr(plan, key, value)
    await db.commit()
    logger.info("Plan %s updated: %s", plan.name, sorted(changes))
    return plan_to_dict(plan)


# Admin reporting


async def _subscriptions_by_plan(db: AsyncSession, *, active_only: bool = False) -> Dict[str, int]:
    query = select(UserSubscription.plan_id, func.count(UserSubscription.id)).group_by(UserSubscription.plan_id)
    if active_only:
        query = query.where(UserSubscription.status == SubscriptionStatus.ACTIVE)
    result = await db.execute(query)
    return {plan_id: int(count) for plan_id, count in result.all()}


async def _revenue_by_plan(db: AsyncSession) -> Dict[str, int]:
    """Completed subscription charges per plan; auto-renewals included."""
    result = await db.execute(
        select(PaymentHistory.plan_id, func.coalesce(func.sum(PaymentHistory.amount), 0))
        .where(
            PaymentHistory.plan_id.is_not(None),
            PaymentHistory.status == PaymentStatus.COMPLETED,
            PaymentHistory.type == PaymentType.SUBSCRIPTION,
        )
        .group_by(PaymentHistory.plan_id)
    )
    return {plan_id: int(total or 0) for plan_id, total in result.all()}


async def _recent_subscribers(plan_id: str, db: AsyncSession, limit: int) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(UserSubscription, User)
        .join(User, User.id == UserSubscription.user_id)
        .where(UserSubscription.plan_id == plan_id)
        .order_by(UserSubscription.created_at.desc())
        .limit(limit)
    )
    return [
        {
            "id": subscription.id,
            "status": subscription.status,
            "billing_cycle": subscription.billing_cycle,
            "created_at": subscription.created_at,
            "user": {"id": user.id, "full_name": user.full_name, "email": user.email},
        }
        for subscription, user in result.all()
    ]


async def _get_plan_or_404(plan_id: str, db: AsyncSession) -> SubscriptionPlan:
    plan = await get_plan(plan_id, db, active_only=False)
    if not plan:
        raise NotFoundError("Plan not found")
    return plan


async def get_plan_details(plan_id: str, db: AsyncSession, *, recent_limit: int = 10) -> Dict[str, Any]:
    plan = await _get_plan_or_404(plan_id, db)
    totals = await _subscriptions_by_plan(db)
    active = await _subscriptions_by_plan(db, active_only=True)
    return {
        **plan_to_dict(plan),
        "total_subscriptions": totals.get(plan.id, 0),
        "active_subscriptions": active.get(plan.id, 0),
        "recent_subscribers": await _recent_subscribers(plan.id, db, recent_limit),
    }


def _growth_rate(recent: int, previous: int) -> float:
    if previous == 0:
        return 100.0 if recent else 0.0
    return round((recent - previous) / previous * 100, 2)


async def get_plan_usage_stats(
    plan_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Subscription mix, revenue and 30-day signup growth for one plan."""
    current = as_utc(now) or utcnow()
    plan = await _get_plan_or_404(plan_id, db)

    breakdown = await db.execute(
        select(UserSubscription.status, UserSubscription.billing_cycle, func.count(UserSubscription.id))
        .where(UserSubscription.plan_id == plan.id)
        .group_by(UserSubscription.status, UserSubscription.billing_cycle)
    )
    subscription_stats = [
        {"status": status, "billing_cycle": billing_cycle, "count": int(count)}
        for status, billing_cycle, count in breakdown.all()
    ]

    revenue_row = (
        await db.execute(
            select(func.coalesce(func.sum(PaymentHistory.amount), 0), func.count(PaymentHistory.id)).where(
                PaymentHistory.plan_id == plan.id,
                PaymentHistory.status == PaymentStatus.COMPLETED,
                PaymentHistory.type == PaymentType.SUBSCRIPTION,
            )
        )
    ).one()
    revenue = int(revenue_row[0] or 0)

    thirty_days_ago = current - timedelta(days=30)
    sixty_days_ago = current - timedelta(days=60)
    signups = UserSubscription.plan_id == plan.id
    recent_count = int(
        (
            await db.execute(
                select(func.count(UserSubscription.id)).where(signups, UserSubscription.created_at >= thirty_days_ago)
            )
        ).scalar()
        or 0
    )
    previous_count = int(
        (
            await db.execute(
                select(func.count(UserSubscription.id)).where(
                    signups,
                    UserSubscription.created_at >= sixty_days_ago,
                    UserSubscription.created_at < thirty_days_ago,
                )
            )
        ).scalar()
        or 0
    )

    return {
        "plan": plan_to_dict(plan),
        "subscription_stats": subscription_stats,
        "revenue": {
            "total": revenue,
            "total_formatted": format_idr(revenue),
            "payments": int(revenue_row[1] or 0),
        },
        "recent_subscriptions": await _recent_subscribers(plan.id, db, 10),
        "growth": {
            "last_30_days": recent_count,
            "previous_30_days": previous_count,
            "growth_rate": _growth_rate(recent_count, previous_count),
        },
    }


async def get_plans_comparison(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.sort_order.asc()))
    totals = await _subscriptions_by_plan(db)
    active = await _subscriptions_by_plan(db, active_only=True)
    revenue = await _revenue_by_plan(db)
    return [
        {
            **plan_to_dict(plan),
            "total_subscriptions": totals.get(plan.id, 0),
            "active_subscriptions": active.get(plan.id, 0),
            "total_revenue": revenue.get(plan.id, 0),
            "total_revenue_formatted": format_idr(revenue.get(plan.id, 0)),
        }
        for plan in result.scalars().all()
    ]


async def get_subscription_counts(db: AsyncSession) -> Dict[str, Any]:
    plans = await db.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.sort_order.asc()))
    active = await _subscriptions_by_plan(db, active_only=True)

    by_status = await db.execute(
        select(UserSubscription.status, func.count(UserSubscription.id)).group_by(UserSubscription.status)
    )
    by_cycle = await db.execute(
        select(UserSubscription.billing_cycle, func.count(UserSubscription.id))
        .where(UserSubscription.status == SubscriptionStatus.ACTIVE)
        .group_by(UserSubscription.billing_cycle)
    )
    return {
        "plan_counts": [
            {
                "id": plan.id,
                "name": plan.name,
                "display_name": plan.display_name,
                "active_subscriptions": active.get(plan.id, 0),
            }
            for plan in plans.scalars().all()
        ],
        "status_distribution": {SubscriptionStatus(status).value: int(count) for status, count in by_status.all()},
        "billing_cycle_distribution": {
            BillingCycle(billing_cycle).value: int(count) for billing_cycle, count in by_cycle.all()
        },
    }
