"""ApiCallLog model: immutable per-request record, source of truth for usage."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.sql import func

from database import Base
from models.enums import ApiCallStatus, enum_column_type
from services.clock import utcnow


class ApiCallLog(Base):
    __tablename__ = "api_call_logs"
    __table_args__ = (
        Index("ix_api_call_logs_user_status_created", "user_id", "status", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    endpoint = Column(String, nullable=False)
    method = Column(String, nullable=False, default="POST")
    model_used = Column(String, nullable=True)
    status = Column(enum_column_type(ApiCallStatus), nullable=False)
    response_time_ms = Column(Integer, nullable=True)
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
