"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

import re

# Message fragments that mean the TradingView session cookie was rejected
_SESSION_ERROR_PATTERN = re.compile(r"session|401|403|unauthori[sz]ed", re.IGNORECASE)


def is_session_error(message: str | None) -> bool:
    """Return True when an error message looks like an expired/rejected session."""
    if not message:
        return False
    return bool(_SESSION_ERROR_PATTERN.search(message))


class AccessServiceError(Exception):
    """Base exception for all access service errors."""

    pass


class UnauthorizedError(AccessServiceError):
    """Raised when the caller is not authenticated."""

    def __init__(self, message: str = "Unauthorized") -> None:
        self.message = message
        super().__init__(message)


class InvalidSignatureError(AccessServiceError):
    """Raised when a billing event signature is missing or does not verify."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class ValidationError(AccessServiceError):
    """Raised when a request is well-formed but not acceptable (bad username, same plan)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(AccessServiceError):
    """Raised when a referenced record does not exist."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CustomerNotFoundError(NotFoundError):
    """Raised when a billing customer doesn't exist (or was deleted)."""

    def __init__(self, lookup: str) -> None:
        self.lookup = lookup
        super().__init__(f"Customer not found: {lookup}")


class SubscriptionNotFoundError(NotFoundError):
    """Raised when a customer has no active subscription."""

    def __init__(self, customer_id: str) -> None:
        self.customer_id = customer_id
        super().__init__(f"No active subscription found for customer {customer_id}")


class ExternalServiceError(AccessServiceError):
    """Raised when a call to Stripe or TradingView fails."""

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.service = service
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_session_error(self) -> bool:
        """Whether this failure looks like a rejected session credential."""
        return is_session_error(self.message)


class PaymentProviderError(ExternalServiceError):
    """Raised when a Stripe operation fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__("stripe", f"Payment provider error: {message}", status_code)


class TradingViewError(ExternalServiceError):
    """Raised when a TradingView endpoint returns a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__("tradingview", message, status_code)


class SessionError(TradingViewError):
    """TradingView rejected the shared session credential."""

    pass


def classify_tradingview_error(message: str, status_code: int | None = None) -> TradingViewError:
    """Build a TradingViewError, narrowing to SessionError when the text says so."""
    if is_session_error(message):
        return SessionError(message, status_code)
    return TradingViewError(message, status_code)
