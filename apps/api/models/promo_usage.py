"""PromoUsage model: one row per redeemed promo code."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base
from services.clock import utcnow


class PromoUsage(Base):
    __tablename__ = "promo_usages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    promo_code_id = Column(String, ForeignKey("promo_codes.id"), nullable=False, index=True)
    payment_history_id = Column(String, ForeignKey("payment_history.id"), nullable=False, unique=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
