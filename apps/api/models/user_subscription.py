"""UserSubscription model with optimistic version locking."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models.enums import BillingCycle, SubscriptionStatus, enum_column_type
from services.clock import utcnow


class UserSubscription(Base):
    """One subscription per user; terminal states are kept, never deleted.

    ``requests_used`` is a cache of the successful ApiCallLog count for the
    current period and is overwritten on read by services.usage.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        CheckConstraint("current_period_start < current_period_end", name="ck_user_subscriptions_period_order"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    plan_id = Column(String, ForeignKey("subscription_plans.id"), nullable=False)
    billing_cycle = Column(enum_column_type(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)
    status = Column(enum_column_type(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    requests_used = Column(Integer, nullable=False, default=0)
    requests_limit = Column(Integer, nullable=False, default=0)
    auto_renew = Column(Boolean, nullable=False, default=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    plan = relationship("SubscriptionPlan", lazy="selectin")
    user = relationship("User", back_populates="subscription")

    __mapper_args__ = {"version_id_col": version}
