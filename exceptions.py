# ==========================================================
#                  SERVICE EXCEPTIONS
# ==========================================================
from typing import Optional


class ServiceError(Exception):
    """Base error for activation, reward and withdrawal flows.

    ``status_code`` is what the HTTP layer answers with and ``retryable``
    tells the caller whether repeating the same request later can succeed.
    """
    status_code = 400
    retryable = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.message = str(self.args[0])

    def to_dict(self):
        return {"error": self.message, "retryable": self.retryable}


class ConfigurationError(ServiceError):
    """Payment gateway credentials are not configured"""
    status_code = 500


class ValidationError(ServiceError):
    """Invalid request data"""


class NotFound(ServiceError):
    """Resource not found"""
    status_code = 404


class InsufficientBalance(ServiceError):
    """Requested amount exceeds the available balance"""

    def __init__(self, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance. Available: {available} Sh, Requested: {requested} Sh"
        )

    def to_dict(self):
        data = super().to_dict()
        data.update({"available": self.available, "requested": self.requested})
        return data


class AlreadyActivated(ServiceError):
    """Your account is already activated."""
    status_code = 409


class DuplicatePendingActivation(ServiceError):
    """You already have a pending activation. Please wait for the current transaction to complete."""
    status_code = 409
    retryable = True


class UnknownTransaction(ServiceError):
    """No transaction found for this request"""
    status_code = 404


class AmountMismatch(ServiceError):
    """Paid amount does not match the expected amount"""

    def __init__(self, expected: int, paid):
        self.expected = expected
        self.paid = paid
        super().__init__(f"Paid amount ({paid}) does not match expected amount ({expected})")


class MalformedCallback(ServiceError):
    """Malformed callback data"""


class GatewayError(ServiceError):
    """Payment service temporarily unavailable. Please try again later."""
    status_code = 502
    retryable = True
