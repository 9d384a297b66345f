"""
Availability checker

Windows are half-open [start, end): a reservation ending exactly when
another begins does not overlap it. Only active reservations block.
"""
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from .models import ACTIVE_STATUSES, AvailabilityResult, BookedWindow, Reservation
from .utils import ensure_utc

if TYPE_CHECKING:
    from .store import ReservationStore, StoreTransaction

__all__ = ["ACTIVE_STATUSES", "AvailabilityChecker", "windows_overlap"]


def windows_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """[a_start, a_end) and [b_start, b_end) share at least one instant"""
    return a_start < b_end and b_start < a_end


class AvailabilityChecker:
    """Overlap checks against the store, inside or outside a transaction"""

    def __init__(self, store: "ReservationStore"):
        self.store = store

    async def has_overlap(
        self,
        tx: "StoreTransaction",
        space_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_reservation_id: Optional[UUID] = None
    ) -> bool:
        """
        True if an active reservation on the space overlaps the window

        Must run inside the transaction that performs the guarded write,
        otherwise the answer can be stale by the time it is acted on.
        """
        conflicts = await tx.find_overlapping(
            space_id, ensure_utc(start_time), ensure_utc(end_time), exclude_reservation_id
        )
        return bool(conflicts)

    async def find_conflicts(
        self,
        space_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_reservation_id: Optional[UUID] = None
    ) -> AvailabilityResult:
        """Advisory read for previews; a booking still re-checks under lock"""
        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)
        async with self.store.transaction(space_id) as tx:
            conflicts: List[Reservation] = await tx.find_overlapping(
                space_id, start_time, end_time, exclude_reservation_id
            )

        conflicts.sort(key=lambda r: r.start_time)
        return AvailabilityResult(
            space_id=space_id,
            start_time=start_time,
            end_time=end_time,
            available=not conflicts,
            conflicts=[
                BookedWindow(start_time=r.start_time, end_time=r.end_time, status=r.status)
                for r in conflicts
            ]
        )
