"""
Exception taxonomy for the escrow ledger.

Every error the ledger, the commission engine and the admin layer raise
derives from EscrowError so callers (API handlers, scheduler jobs) can
catch the whole family in one place and map it to a response.
"""

from typing import Any, Dict, Optional


class EscrowError(Exception):
    """Base exception for escrow-related errors."""

    #: Short machine-readable label used in API error bodies
    error_label = "Escrow error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as an ``{error, details}`` body."""
        details = dict(self.details)
        details.setdefault("message", self.message)
        return {"error": self.error_label, "details": details}


class ValidationError(EscrowError):
    """Raised when input is malformed or out of range."""
    error_label = "Validation failed"


class AuthorizationError(EscrowError):
    """Raised when the caller is not a party to the escrow (or not an admin)."""
    error_label = "Access denied"


class StateError(EscrowError):
    """Raised when an operation is invalid for the current status, including frozen accounts."""
    error_label = "Invalid state"


class InsufficientFundsError(EscrowError):
    """Raised when an amount exceeds the available balance."""
    error_label = "Insufficient funds in escrow"


class NotFoundError(EscrowError):
    """Raised when an escrow account, transaction or contract does not exist."""
    error_label = "Not found"


class ConcurrencyConflictError(EscrowError):
    """Raised when the per-account lock could not be obtained in time."""
    error_label = "Concurrent modification"


class GatewayError(EscrowError):
    """
    Raised when the payment gateway fails.

    Attributes:
        retryable: True for transient failures (timeouts, 5xx, rate limits),
            False for terminal ones (card declined, invalid request)
    """
    error_label = "Payment gateway error"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["details"]["retryable"] = self.retryable
        return body


class DatabaseError(EscrowError):
    """Raised when a persistence operation fails."""
    error_label = "Database error"
