"""SubscriptionPlan catalog model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base
from models.enums import BillingCycle
from services.clock import utcnow


UNLIMITED_REQUESTS = -1


class SubscriptionPlan(Base):
    """Plan tier. ``sort_order`` defines the upgrade/downgrade ordering."""

    __tablename__ = "subscription_plans"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    monthly_requests = Column(Integer, nullable=False, default=0)
    monthly_price = Column(Integer, nullable=False, default=0)
    yearly_price = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def price_for(self, billing_cycle: BillingCycle) -> int:
        if BillingCycle(billing_cycle) == BillingCycle.YEARLY:
            return int(self.yearly_price)
        return int(self.monthly_price)
