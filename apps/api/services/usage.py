"""Usage accounting against the append-only ApiCallLog."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from models.api_call_log import ApiCallLog
from models.enums import ApiCallStatus
from models.user_subscription import UserSubscription
from services.clock import as_utc, utcnow
from services.errors import BillingValidationError

logger = logging.getLogger(__name__)

ERROR_STATUSES = (ApiCallStatus.FAILED, ApiCallStatus.TIMEOUT, ApiCallStatus.RATE_LIMITED)
TIMEFRAMES = ("today", "week", "month")
ADMIN_TIMEFRAMES = TIMEFRAMES + ("all",)


async def count_success_in_window(
    user_id: str,
    period_start: datetime,
    period_end: datetime,
    db: AsyncSession,
) -> int:
    """Count SUCCESS calls with ``period_start <= created_at <= period_end``."""
    result = await db.execute(
        select(func.count(ApiCallLog.id)).where(
            ApiCallLog.user_id == user_id,
            ApiCallLog.status == ApiCallStatus.SUCCESS,
            ApiCallLog.created_at >= period_start,
            ApiCallLog.created_at <= period_end,
        )
    )
    return int(result.scalar() or 0)


async def reconcile_usage(subscription: UserSubscription, db: AsyncSession) -> int:
    """Overwrite the cached ``requests_used`` with the log count.

    Only writes when the cache drifted. A concurrent writer winning the
    version check leaves the cache for the next read to fix.
    """
    actual = await count_success_in_window(
        subscription.user_id,
        subscription.current_period_start,
        subscription.current_period_end,
        db,
    )
    if actual == subscription.requests_used:
        return actual

    logger.info(
        "Syncing usage for user %s: cached=%s -> actual=%s",
        subscription.user_id,
        subscription.requests_used,
        actual,
    )
    subscription.requests_used = actual
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        await db.refresh(subscription)
        logger.warning("Usage sync for user %s lost a concurrent update; will retry on next read", subscription.user_id)
    return actual


async def log_api_call(
    db: AsyncSession,
    *,
    endpoint: str,
    status: ApiCallStatus,
    user_id: Optional[str] = None,
    method: str = "POST",
    model_used: Optional[str] = None,
    response_time_ms: Optional[int] = None,
    input_tokens: Optional[int] = None,
    output_tokens: Optional[int] = None,
    total_tokens: Optional[int] = None,
    error_message: Optional[str] = None,
    error_code: Optional[str] = None,
) -> Optional[ApiCallLog]:
    """Append an ApiCallLog row. Logging failures never break the caller."""
    if total_tokens is None and (input_tokens is not None or output_tokens is not None):
        total_tokens = int(input_tokens or 0) + int(output_tokens or 0)
    entry = ApiCallLog(
        id=str(uuid.uuid4()),
        user_id=user_id,
        endpoint=endpoint,
        method=method,
        model_used=model_used,
        status=status,
        response_time_ms=response_time_ms,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        error_message=error_message[:2000] if error_message else None,
        error_code=error_code,
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to log API call for endpoint %s", endpoint)
        return None
    return entry


def _timeframe_start(timeframe: str, now: datetime, allowed=TIMEFRAMES) -> Optional[datetime]:
    if timeframe not in allowed:
        raise BillingValidationError(f"timeframe must be one of {', '.join(allowed)}")
    if timeframe == "all":
        return None
    if timeframe == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if timeframe == "week":
        return now - timedelta(days=7)
    return now - timedelta(days=30)


async def get_usage_stats(
    user_id: str,
    db: AsyncSession,
    *,
    timeframe: str = "month",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = as_utc(now) or utcnow()
    since = _timeframe_start(timeframe, current)
    base_filters = (ApiCallLog.user_id == user_id, ApiCallLog.created_at >= since)

    overview_row = (
        await db.execute(
            select(
                func.count(ApiCallLog.id),
                func.coalesce(func.sum(ApiCallLog.total_tokens), 0),
                func.coalesce(func.sum(ApiCallLog.input_tokens), 0),
                func.coalesce(func.sum(ApiCallLog.output_tokens), 0),
            ).where(*base_filters)
        )
    ).one()

    model_rows = (
        await db.execute(
            select(
                ApiCallLog.model_used,
                func.count(ApiCallLog.id).label("requests"),
                func.coalesce(func.sum(ApiCallLog.total_tokens), 0),
            )
            .where(*base_filters, ApiCallLog.model_used.is_not(None))
            .group_by(ApiCallLog.model_used)
            .order_by(func.count(ApiCallLog.id).desc())
        )
    ).all()

    endpoint_rows = (
        await db.execute(
            select(
                ApiCallLog.endpoint,
                func.count(ApiCallLog.id).label("requests"),
                func.coalesce(func.sum(ApiCallLog.total_tokens), 0),
            )
            .where(*base_filters)
            .group_by(ApiCallLog.endpoint)
            .order_by(func.count(ApiCallLog.id).desc())
        )
    ).all()

    day = func.date(ApiCallLog.created_at)
    daily_rows = (
        await db.execute(
            select(
                day.label("day"),
                func.count(ApiCallLog.id),
                func.coalesce(func.sum(ApiCallLog.total_tokens), 0),
            )
            .where(*base_filters)
            .group_by(day)
            .order_by(day)
        )
    ).all()

    return {
        "overview": {
            "total_requests": int(overview_row[0] or 0),
            "total_tokens": int(overview_row[1] or 0),
            "input_tokens": int(overview_row[2] or 0),
            "output_tokens": int(overview_row[3] or 0),
            "timeframe": timeframe,
        },
        "model_usage": [
            {"model": model, "requests": int(requests), "tokens": int(tokens or 0)}
            for model, requests, tokens in model_rows
        ],
        "endpoint_usage": [
            {"endpoint": endpoint, "requests": int(requests), "tokens": int(tokens or 0)}
            for endpoint, requests, tokens in endpoint_rows
        ],
        "daily_usage": [
            {"date": str(bucket), "requests": int(requests), "tokens": int(tokens or 0)}
            for bucket, requests, tokens in daily_rows
        ],
    }


async def get_recent_errors(user_id: Optional[str], db: AsyncSession, *, limit: int = 10) -> List[Dict[str, Any]]:
    """Latest failed calls for one user, or across the platform when ``user_id`` is None."""
    query = select(ApiCallLog).where(ApiCallLog.status.in_(ERROR_STATUSES))
    if user_id is not None:
        query = query.where(ApiCallLog.user_id == user_id)
    result = await db.execute(
        query
        .order_by(ApiCallLog.created_at.desc())
        .limit(max(limit, 1))
    )
    return [
        {
            "id": row.id,
            "endpoint": row.endpoint,
            "model_used": row.model_used,
            "status": row.status,
            "error_message": row.error_message,
            "error_code": row.error_code,
            "created_at": row.created_at,
        }
        for row in result.scalars().all()
    ]


async def get_api_statistics(
    db: AsyncSession,
    *,
    timeframe: str = "month",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Platform-wide call volume, success rate, token spend and latency."""
    current = as_utc(now) or utcnow()
    since = _timeframe_start(timeframe, current, ADMIN_TIMEFRAMES)
    window = (ApiCallLog.created_at >= since,) if since is not None else ()
    succeeded = ApiCallLog.status == ApiCallStatus.SUCCESS

    row = (
        await db.execute(
            select(
                func.count(ApiCallLog.id),
                func.count(ApiCallLog.id).filter(succeeded),
                func.count(ApiCallLog.id).filter(ApiCallLog.status.in_(ERROR_STATUSES)),
                func.coalesce(func.sum(ApiCallLog.total_tokens).filter(succeeded), 0),
                func.avg(ApiCallLog.response_time_ms).filter(succeeded),
            ).where(*window)
        )
    ).one()
    total, success, failed = int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)

    return {
        "total_requests": total,
        "success_requests": success,
        "failed_requests": failed,
        "success_rate": round(success / total * 100) if total else 0,
        "total_tokens": int(row[3] or 0),
        "avg_response_time_ms": round(float(row[4] or 0)),
        "timeframe": timeframe,
    }


async def get_model_usage_stats(
    db: AsyncSession,
    *,
    timeframe: str = "all",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """SUCCESS calls and tokens per model, busiest first."""
    current = as_utc(now) or utcnow()
    since = _timeframe_start(timeframe, current, ADMIN_TIMEFRAMES)
    window = (ApiCallLog.created_at >= since,) if since is not None else ()
    result = await db.execute(
        select(
            ApiCallLog.model_used,
            func.count(ApiCallLog.id),
            func.coalesce(func.sum(ApiCallLog.total_tokens), 0),
        )
        .where(ApiCallLog.model_used.is_not(None), ApiCallLog.status == ApiCallStatus.SUCCESS, *window)
        .group_by(ApiCallLog.model_used)
        .order_by(func.count(ApiCallLog.id).desc())
    )
    return [
        {"model": model, "requests": int(requests), "tokens": int(tokens or 0)}
        for model, requests, tokens in result.all()
    ]
