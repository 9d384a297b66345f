"""
Typed errors for the reservation engine
Every failure a caller can see maps to exactly one of these
"""
from typing import Optional, Any


class ReservationError(Exception):
    """Base exception for all reservation engine errors"""

    retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details
        }

# ============================================================
# Request Validation
# ============================================================

class InvalidWindowError(ReservationError):
    """Requested time window is empty, reversed or already started"""

    def __init__(self, message: str, start_time: Any = None, end_time: Any = None):
        super().__init__(
            message=message,
            error_code="INVALID_WINDOW",
            details={
                "start_time": str(start_time) if start_time is not None else None,
                "end_time": str(end_time) if end_time is not None else None
            }
        )

class NotFoundError(ReservationError):
    """Record not found"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": str(identifier)}
        )
        self.resource = resource
        self.identifier = identifier

# ============================================================
# Availability
# ============================================================

class SpaceUnavailableError(ReservationError):
    """Space is inactive or cannot be booked in the requested mode"""

    def __init__(self, space_id: Any, reason: str = "Space is not available"):
        super().__init__(
            message=reason,
            error_code="SPACE_UNAVAILABLE",
            details={"space_id": str(space_id)}
        )
        self.space_id = space_id

class SlotUnavailableError(ReservationError):
    """Requested window overlaps an active reservation on the same space"""

    def __init__(self, space_id: Any, start_time: Any = None, end_time: Any = None):
        super().__init__(
            message=f"Space {space_id} is already reserved for an overlapping window",
            error_code="SLOT_UNAVAILABLE",
            details={
                "space_id": str(space_id),
                "start_time": str(start_time) if start_time is not None else None,
                "end_time": str(end_time) if end_time is not None else None
            }
        )
        self.space_id = space_id

# ============================================================
# Lifecycle
# ============================================================

class ForbiddenError(ReservationError):
    """Actor is not allowed to perform this operation"""

    def __init__(self, message: str = "Insufficient permissions", actor_id: Any = None):
        super().__init__(
            message=message,
            error_code="FORBIDDEN",
            details={"actor_id": str(actor_id)} if actor_id is not None else {}
        )

class IllegalTransitionError(ReservationError):
    """Event is not valid for the reservation's current status"""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        event: Optional[str] = None
    ):
        super().__init__(
            message=message,
            error_code="ILLEGAL_TRANSITION",
            details={
                "current_state": current_state,
                "event": event
            }
        )
        self.current_state = current_state
        self.event = event

class OutsideWindowError(ReservationError):
    """Check-in attempted outside the reserved window"""

    def __init__(self, reservation_id: Any, attempted_at: Any):
        super().__init__(
            message=f"Check-in for reservation {reservation_id} is only allowed within the reserved window",
            error_code="OUTSIDE_WINDOW",
            details={
                "reservation_id": str(reservation_id),
                "attempted_at": str(attempted_at)
            }
        )

# ============================================================
# External Services & Storage
# ============================================================

class PaymentFailedError(ReservationError):
    """Payment gateway declined or failed the charge"""

    def __init__(self, reservation_id: Any, reason: Optional[str] = None):
        super().__init__(
            message=reason or "Payment failed",
            error_code="PAYMENT_FAILED",
            details={"reservation_id": str(reservation_id)}
        )
        self.reason = reason

class StorageConflictError(ReservationError):
    """Transaction aborted by contention, safe to retry the whole operation"""

    retryable = True

    def __init__(self, message: str = "Storage transaction conflict", resource: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="STORAGE_CONFLICT",
            details={"resource": resource} if resource else {}
        )
