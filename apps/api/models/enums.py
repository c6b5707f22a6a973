"""Enumerations shared by billing models."""

import enum

from sqlalchemy import Enum as SAEnum


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class PaymentType(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    WALLET_TOPUP = "WALLET_TOPUP"
    DEDUCTION = "DEDUCTION"
    REFUND = "REFUND"


CREDIT_PAYMENT_TYPES = (PaymentType.WALLET_TOPUP, PaymentType.REFUND)
DEBIT_PAYMENT_TYPES = (PaymentType.SUBSCRIPTION, PaymentType.DEDUCTION)


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class TopupRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApiCallStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"


def enum_column_type(enum_cls):
    """Portable string-backed enum column type."""
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)
