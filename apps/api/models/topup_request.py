"""TopupRequest model for manual, proof-backed wallet top-ups."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from database import Base
from models.enums import TopupRequestStatus, enum_column_type
from services.clock import utcnow


class TopupRequest(Base):
    """PENDING -> UNDER_REVIEW -> APPROVED | REJECTED."""

    __tablename__ = "topup_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    payment_method = Column(String, nullable=False)
    status = Column(enum_column_type(TopupRequestStatus), nullable=False, default=TopupRequestStatus.PENDING, index=True)
    proof_image_url = Column(String, nullable=True)
    reviewed_by = Column(String, nullable=True)
    review_notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    payment_history_id = Column(String, ForeignKey("payment_history.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
