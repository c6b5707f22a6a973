"""Domain exceptions for wallet, subscription, promo and top-up flows.

Each error is an ``HTTPException`` so routers can let them propagate; ``main``
renders them with the uniform ``{"success": false, ...}`` envelope.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException


class BillingError(HTTPException):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(status_code=status_code or self.status_code, detail=message)
        self.message = message


class BillingValidationError(BillingError):
    """Bad input shape or range."""

    code = "validation_error"


class BusinessRuleError(BillingError):
    """Request is well formed but a billing rule rejects it."""

    code = "business_rule"


class InsufficientFundsError(BusinessRuleError):
    status_code = 402
    code = "insufficient_funds"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class StateConflictError(BillingError):
    """Illegal state transition or duplicate resource."""

    status_code = 409
    code = "state_conflict"


class ConcurrentUpdateError(StateConflictError):
    code = "concurrent_update"


class GatewayError(BillingError):
    status_code = 502
    code = "gateway_error"


class ConfigurationError(BillingError):
    status_code = 503
    code = "not_configured"
