"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base
from models.enums import UserRole, enum_column_type
from services.clock import utcnow


class User(Base):
    """Account owning a wallet and at most one subscription."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=True)
    role = Column(enum_column_type(UserRole), nullable=False, default=UserRole.USER)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    # Relationships
    wallet = relationship("Wallet", back_populates="user", uselist=False)
    subscription = relationship("UserSubscription", back_populates="user", uselist=False)
