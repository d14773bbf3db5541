"""Domain errors raised by the stock ledger, transfers and notifiers.

Each error carries the HTTP status the API layer maps it to, so route
handlers never translate errors by hand.
"""
from typing import Any, Dict, Optional


class VaccineStockError(Exception):
    """Base class for ledger errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(VaccineStockError):
    """Bad input: missing vaccine, non-positive quantity, missing expiration."""
    status_code = 400


class AuthorizationError(VaccineStockError):
    """The acting owner is not a party entitled to this transition."""
    status_code = 403


class NotFoundError(VaccineStockError):
    """Lot, stock line or transfer does not exist."""
    status_code = 404


class ConflictError(VaccineStockError):
    """A concurrent writer changed the same rows; the unit can be retried."""
    status_code = 409


class InsufficientStockError(VaccineStockError):
    """Requested consumption exceeds the available remaining quantity."""
    status_code = 422


class TransientDeliveryError(VaccineStockError):
    """A notification channel failed; the next scheduled run retries."""
    status_code = 503
