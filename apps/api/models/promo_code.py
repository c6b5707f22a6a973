"""PromoCode model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base
from models.enums import DiscountType, enum_column_type
from services.clock import utcnow


UNLIMITED_USAGE = -1


class PromoCode(Base):
    """Admin-authored discount code. ``code`` is stored uppercase."""

    __tablename__ = "promo_codes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    discount_type = Column(enum_column_type(DiscountType), nullable=False)
    discount_value = Column(Integer, nullable=False)
    max_usage = Column(Integer, nullable=False, default=UNLIMITED_USAGE)
    max_usage_per_user = Column(Integer, nullable=False, default=1)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    min_amount = Column(Integer, nullable=False, default=0)
    max_discount = Column(Integer, nullable=True)
    current_usage = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
