"""Exceptions shared by the TidyHome API and the checkout client."""
from typing import Optional


class TidyHomeError(Exception):
    """Base exception for all TidyHome errors."""

    pass


# Server side


class ValidationError(TidyHomeError):
    """Raised when a request payload is missing fields or is malformed."""

    pass


class NotFoundError(TidyHomeError):
    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found")


class PermissionDeniedError(TidyHomeError):
    pass


class InvalidTransitionError(TidyHomeError):
    """Raised when a status or paymentStatus change is not in the transition table."""

    def __init__(self, field: str, current: str, requested: str, reason: Optional[str] = None):
        self.field = field
        self.current = current
        self.requested = requested
        msg = f"Cannot change {field} from {current} to {requested}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class ConflictError(TidyHomeError):
    """Raised when a compare-and-set update loses against a concurrent writer."""

    pass


# Client side


class CheckoutValidationError(TidyHomeError):
    """Raised before any network call when checkout input is incomplete or invalid."""

    pass


class OrderApiError(TidyHomeError):
    """Raised by the orders client when the API rejects a call or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PaymentProviderError(TidyHomeError):
    """Raised when the external payment provider fails to create or capture a payment."""

    pass


class CheckoutStateError(TidyHomeError):
    """Raised when a payment callback arrives in a state that cannot accept it."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Checkout cannot move from {current} to {requested}")


ERROR_STATUS_CODES = {
    ValidationError: 400,
    InvalidTransitionError: 400,
    NotFoundError: 404,
    PermissionDeniedError: 403,
    ConflictError: 409,
}
