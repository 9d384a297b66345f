"""
Parking reservation engine

Overlap-safe booking, pricing and lifecycle management for parking spaces.
"""
from .engine import ReservationEngine, SpaceDirectory
from .exceptions import (
    ForbiddenError,
    IllegalTransitionError,
    InvalidWindowError,
    NotFoundError,
    OutsideWindowError,
    PaymentFailedError,
    ReservationError,
    SlotUnavailableError,
    SpaceUnavailableError,
    StorageConflictError,
)
from .models import (
    LifecycleEvent,
    Payment,
    PaymentStatus,
    PriceBreakdown,
    PricingMode,
    RateSchedule,
    Reservation,
    ReservationFilter,
    ReservationPage,
    ReservationStatus,
    SpaceInfo,
    VehicleInfo,
    VehicleType,
)
from .store import InMemoryReservationStore, ReservationStore

__version__ = "1.0.0"
