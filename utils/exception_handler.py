"""
Exception Handler Module
Domain exceptions raised by the services and their HTTP status mapping
"""

import logging
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors surfaced to callers with a reason string"""

    status_code = 400
    error_code = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_payload(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class ValidationError(ServiceError):
    """Custom validation error for input validation failures"""

    status_code = 400
    error_code = "validation_error"


class AuthorizationError(ServiceError):
    """Caller's role or ownership does not permit the operation"""

    status_code = 403
    error_code = "authorization_error"


class NotFound(ServiceError):
    status_code = 404
    error_code = "not_found"


class StateConflict(ServiceError):
    """Operation is invalid in the current job, dispute, application or withdrawal status"""

    status_code = 409
    error_code = "state_conflict"


class DuplicateApplication(StateConflict):
    error_code = "duplicate_application"


class DuplicateDispute(StateConflict):
    error_code = "duplicate_dispute"


class InsufficientBalance(ServiceError):
    """Wallet available balance is lower than the amount required"""

    status_code = 422
    error_code = "insufficient_balance"

    def __init__(self, available: Decimal, required: Decimal, message: Optional[str] = None):
        self.available = available
        self.required = required
        super().__init__(message or f"Insufficient balance: available {available:.2f}, required {required:.2f}")

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["available"] = f"{self.available:.2f}"
        payload["required"] = f"{self.required:.2f}"
        return payload


class InternalConsistency(ServiceError):
    """Stored data contradicts an invariant (e.g. missing accepted application at settlement)"""

    status_code = 500
    error_code = "internal_consistency"
