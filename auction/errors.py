"""Error taxonomy for auction operations.

Every error carries a machine-readable ``code`` (the error kind, e.g. ``BidTooLow``)
and a short human-readable ``message`` that the bidding UI shows as a toast.
The web layer maps each class to an HTTP status through ``status_code``.
"""
from __future__ import annotations


class AuctionError(Exception):
    """Base class for auction errors. Raising one guarantees no state was changed."""

    status_code = 400
    default_code = "AuctionError"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(AuctionError):
    """Malformed id or missing/invalid field."""

    status_code = 400
    default_code = "ValidationError"


class BidRejectedError(AuctionError):
    """Bid breaks the base price or strictly-increasing rule."""

    status_code = 400
    default_code = "BidRejected"


class BudgetError(AuctionError):
    status_code = 400
    default_code = "InsufficientBudget"


class AuthorizationError(AuctionError):
    """Wrong role, or an auctioneer acting on a tournament they are not bound to."""

    status_code = 403
    default_code = "Forbidden"


class ResourceNotFoundError(AuctionError):
    status_code = 404
    default_code = "NotFound"


class StateConflictError(AuctionError):
    """Operation not allowed in the current auction/participation state."""

    status_code = 409
    default_code = "StateConflict"


class PersistenceError(AuctionError):
    """Storage failure. Partial writes have been rolled back; the whole operation may be retried."""

    status_code = 503
    default_code = "PersistenceFailure"


def parse_id(value, code: str = "InvalidId", label: str = "id") -> int:
    """Coerce an int or numeric string to a positive int id (handles ids sent as strings)."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label}", code)
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.strip().isdigit():
        result = int(value.strip())
    else:
        raise ValidationError(f"Invalid {label}", code)
    if result <= 0:
        raise ValidationError(f"Invalid {label}", code)
    return result
