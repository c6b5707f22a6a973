"""Background renewal and expiry sweeps.

Neither sweep keeps a cursor: each one is a function of the current table
state, so a restarted process picks up whatever is still due.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.enums import SubscriptionStatus
from models.user_subscription import UserSubscription
from services.clock import as_utc, utcnow
from services.subscriptions import process_auto_renew

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    name: str
    scanned: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sweep": self.name,
            "scanned": self.scanned,
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class BillingScheduler:
    """Owns the two sweep loops; ``start``/``stop`` are driven by the app lifespan."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        renewal_interval_hours: Optional[float] = None,
        expiry_interval_hours: Optional[float] = None,
        renewal_window_hours: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.renewal_interval_hours = float(
            settings.RENEWAL_SWEEP_INTERVAL_HOURS if renewal_interval_hours is None else renewal_interval_hours
        )
        self.expiry_interval_hours = float(
            settings.EXPIRY_SWEEP_INTERVAL_HOURS if expiry_interval_hours is None else expiry_interval_hours
        )
        self.renewal_window_hours = int(
            settings.RENEWAL_WINDOW_HOURS if renewal_window_hours is None else renewal_window_hours
        )
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self, *, run_immediately: bool = False) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._loop(self.run_renewal_sweep, self.renewal_interval_hours, run_immediately)),
            asyncio.create_task(self._loop(self.run_expiry_sweep, self.expiry_interval_hours, run_immediately)),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _loop(self, sweep, interval_hours: float, run_immediately: bool) -> None:
        if interval_hours <= 0:
            return
        if not run_immediately:
            await asyncio.sleep(interval_hours * 3600)
        while True:
            try:
                await sweep()
            except Exception:
                logger.exception("Billing sweep tick failed")
            await asyncio.sleep(interval_hours * 3600)

    async def run_renewal_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Renew every auto-renewing ACTIVE subscription ending within the window.

        There is no lower bound on ``current_period_end``: subscriptions that
        lapsed while the process was down are still renewed from their old end.
        """
        current = as_utc(now) or utcnow()
        horizon = current + timedelta(hours=self.renewal_window_hours)
        result = SweepResult(name="renewal")
        logger.info("Starting auto-renewal sweep")

        async with self.session_factory() as db:
            rows = await db.execute(
                select(UserSubscription.user_id).where(
                    UserSubscription.auto_renew.is_(True),
                    UserSubscription.status == SubscriptionStatus.ACTIVE,
                    UserSubscription.current_period_end <= horizon,
                )
            )
            user_ids = list(rows.scalars().all())

        result.scanned = len(user_ids)
        logger.info("Found %s subscriptions due for renewal", result.scanned)

        for user_id in user_ids:
            try:
                async with self.session_factory() as db:
                    outcome = await process_auto_renew(user_id, db, now=current)
            except Exception as exc:
                result.failed += 1
                result.errors.append(f"{user_id}: {exc}")
                logger.exception("Auto-renewal error for user %s", user_id)
                continue

            if outcome.get("success"):
                result.successful += 1
            else:
                result.failed += 1
                result.errors.append(f"{user_id}: {outcome.get('message')}")
                logger.warning("Auto-renewal failed for user %s: %s", user_id, outcome.get("message"))

        logger.info(
            "Auto-renewal sweep completed. Successful: %s, Failed: %s",
            result.successful,
            result.failed,
        )
        return result

    async def run_expiry_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Flip lapsed, non-renewing ACTIVE subscriptions to EXPIRED in one UPDATE."""
        current = as_utc(now) or utcnow()
        result = SweepResult(name="expiry")
        logger.info("Starting subscription expiry sweep")

        async with self.session_factory() as db:
            outcome = await db.execute(
                update(UserSubscription)
                .where(
                    UserSubscription.status == SubscriptionStatus.ACTIVE,
                    UserSubscription.current_period_end < current,
                    or_(
                        UserSubscription.auto_renew.is_(False),
                        UserSubscription.cancel_at_period_end.is_(True),
                    ),
                )
                .values(
                    status=SubscriptionStatus.EXPIRED,
                    version=UserSubscription.version + 1,
                    updated_at=current,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        result.scanned = result.successful = int(outcome.rowcount or 0)
        logger.info("Marked %s subscriptions as expired", result.successful)
        return result
