"""
paddock/exceptions.py
Typed exceptions for the booking, penalty and results engines.

Every error carries an HTTP status code and a machine-readable code so the
API layer can render it without inspecting the type:
- ValidationError: malformed slot/team/type selection, nothing written
- EligibilityError: prerequisite unmet or already passed
- ConflictError: lane/slot taken concurrently, caller regenerates and retries
- PersistenceError: store unavailable, retried by the caller
- PartialAggregationFailure: some items of a batch failed, the rest committed
"""
from typing import Any, Dict, List, Optional


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NOT_FOUND = "NOT_FOUND"
    SLOT_CONFLICT = "SLOT_CONFLICT"
    PERSISTENCE_UNAVAILABLE = "PERSISTENCE_UNAVAILABLE"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PaddockError(Exception):
    """Base exception for the engine"""
    status_code: int = 500
    code: str = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(PaddockError):
    """
    Raised before any write when a request is malformed.

    Examples:
    - start time not before end time
    - non-positive slot duration
    - inactive inspection type
    - start time off the type's slot grid
    """
    status_code = 400
    code = ErrorCode.VALIDATION_ERROR


class InvalidTransitionError(ValidationError):
    """Raised when a booking status change is not allowed."""
    code = ErrorCode.INVALID_TRANSITION


class EligibilityError(PaddockError):
    """
    Raised when a team may not book an inspection type.

    Non-fatal: the reason is surfaced to the user and no booking is attempted.
    """
    status_code = 422
    code = ErrorCode.NOT_ELIGIBLE

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason, {"reason": reason})


class NotFoundError(PaddockError):
    """Raised when a referenced team, type, booking or rule doesn't exist."""
    status_code = 404
    code = ErrorCode.NOT_FOUND


class ConflictError(PaddockError):
    """Raised when the chosen lane/slot was taken or is exhausted."""
    status_code = 409
    code = ErrorCode.SLOT_CONFLICT


class SlotExhaustedError(ConflictError):
    """Raised when the requested time has no lane left to offer."""


class PersistenceError(PaddockError):
    """Raised when the store is unavailable."""
    status_code = 503
    code = ErrorCode.PERSISTENCE_UNAVAILABLE


class PartialAggregationFailure(PaddockError):
    """Raised when a batch committed only part of its items."""
    status_code = 207
    code = ErrorCode.PARTIAL_FAILURE

    def __init__(self, failed_ids: List[Any], message: Optional[str] = None):
        self.failed_ids = list(failed_ids)
        super().__init__(
            message or f"{len(self.failed_ids)} item(s) failed",
            {"failed_ids": self.failed_ids},
        )
