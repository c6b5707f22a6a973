"""PaymentHistory model: append-only money movement log."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models.enums import PaymentStatus, PaymentType, enum_column_type
from services.clock import utcnow


class PaymentHistory(Base):
    """Ledger row. ``amount`` is always positive; direction follows ``type``."""

    __tablename__ = "payment_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(enum_column_type(PaymentType), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    status = Column(enum_column_type(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_method = Column(String, nullable=True)
    external_id = Column(String, nullable=True, unique=True, index=True)
    plan_id = Column(String, ForeignKey("subscription_plans.id"), nullable=True)
    promo_code_id = Column(String, ForeignKey("promo_codes.id"), nullable=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    processed_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    plan = relationship("SubscriptionPlan", lazy="selectin")
