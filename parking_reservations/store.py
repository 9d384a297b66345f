"""
Reservation store: the persistence boundary of the engine

The engine only talks to ReservationStore / StoreTransaction. A
transaction is scoped to one space and must give the engine exclusive
use of that space's reservations and spot counter until it commits, so
an overlap check and the insert it guards cannot interleave with
another writer.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Dict, Iterable, List, Optional
from uuid import UUID

from .availability import windows_overlap
from .exceptions import StorageConflictError
from .locks import LocalSpaceLocks, SpaceLocks
from .models import (
    ACTIVE_STATUSES,
    Payment,
    Reservation,
    ReservationFilter,
    ReservationPage,
    ReservationStatus,
    SpaceInfo,
    StatusChange,
)

logger = logging.getLogger(__name__)


class StoreTransaction(ABC):
    """Operations available while holding a space transaction"""

    @abstractmethod
    async def find_overlapping(
        self,
        space_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_reservation_id: Optional[UUID] = None
    ) -> List[Reservation]:
        """Active reservations on the space whose window overlaps [start, end)"""

    @abstractmethod
    async def get_reservation(self, reservation_id: UUID) -> Optional[Reservation]:
        """Read a reservation as this transaction sees it"""

    @abstractmethod
    async def insert_reservation(self, reservation: Reservation) -> Reservation:
        """Insert a new reservation; duplicate reference codes raise StorageConflictError"""

    @abstractmethod
    async def compare_and_set_status(
        self,
        reservation_id: UUID,
        expected: ReservationStatus,
        new_status: ReservationStatus,
        changes: Optional[dict] = None
    ) -> Optional[Reservation]:
        """
        Move reservation to new_status only if it is still in expected

        Returns the updated reservation, or None if the status had changed.
        """

    @abstractmethod
    async def adjust_available_spots(self, space_id: UUID, delta: int) -> Optional[int]:
        """Add delta to the space's available spots, clamped to [0, total]"""

    @abstractmethod
    async def get_payment(self, reservation_id: UUID) -> Optional[Payment]:
        """Payment attached to the reservation, if any"""

    @abstractmethod
    async def save_payment(self, payment: Payment) -> Payment:
        """Insert or replace the reservation's payment"""

    @abstractmethod
    async def append_history(self, change: StatusChange) -> None:
        """Record one status change"""


class ReservationStore(ABC):
    """Transactional reservation persistence"""

    @abstractmethod
    def transaction(self, space_id: UUID) -> AsyncContextManager[StoreTransaction]:
        """Open a transaction holding the given space; commits on clean exit"""

    @abstractmethod
    async def get_reservation(self, reservation_id: UUID) -> Optional[Reservation]:
        pass

    @abstractmethod
    async def get_reservation_by_reference(self, reference_code: str) -> Optional[Reservation]:
        pass

    @abstractmethod
    async def list_reservations(
        self,
        filters: ReservationFilter,
        requester_id: Optional[UUID] = None,
        space_owner_id: Optional[UUID] = None
    ) -> ReservationPage:
        """Reservations for a requester or for a space owner, newest window first"""

    @abstractmethod
    async def find_expirable(
        self,
        pending_created_before: datetime,
        payment_changed_before: datetime,
        now: datetime,
        limit: int = 500
    ) -> List[Reservation]:
        """
        Reservations the expiry job should expire

        Pending created before pending_created_before or whose window has
        started; AwaitingPayment approved before payment_changed_before or
        whose window has ended.
        """

    @abstractmethod
    async def get_payment(self, reservation_id: UUID) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_history(self, reservation_id: UUID) -> List[StatusChange]:
        pass


def is_expirable(
    reservation: Reservation,
    pending_created_before: datetime,
    payment_changed_before: datetime,
    now: datetime
) -> bool:
    """Expiry rule shared by the in-memory store and tests"""
    if reservation.status == ReservationStatus.PENDING:
        return reservation.created_at <= pending_created_before or reservation.start_time <= now
    if reservation.status == ReservationStatus.AWAITING_PAYMENT:
        approved_at = reservation.status_changed_at or reservation.created_at
        return approved_at <= payment_changed_before or reservation.end_time <= now
    return False

# ============================================================
# In-Memory Backend
# ============================================================

class InMemoryTransaction(StoreTransaction):
    """
    Staged view over an InMemoryReservationStore

    Writes go to a private overlay and are published in commit(); an
    exception inside the transaction body discards them.
    """

    def __init__(self, store: "InMemoryReservationStore"):
        self.store = store
        self._reservations: Dict[UUID, Reservation] = {}
        self._spaces: Dict[UUID, SpaceInfo] = {}
        self._payments: Dict[UUID, Payment] = {}
        self._history: List[StatusChange] = []

    def _visible_reservations(self) -> Iterable[Reservation]:
        merged = dict(self.store._reservations)
        merged.update(self._reservations)
        return merged.values()

    async def find_overlapping(
        self,
        space_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_reservation_id: Optional[UUID] = None
    ) -> List[Reservation]:
        # Yield like a real round-trip so concurrent callers interleave here
        await asyncio.sleep(0)
        return [
            r for r in self._visible_reservations()
            if r.space_id == space_id
            and r.status in ACTIVE_STATUSES
            and r.id != exclude_reservation_id
            and windows_overlap(r.start_time, r.end_time, start_time, end_time)
        ]

    async def get_reservation(self, reservation_id: UUID) -> Optional[Reservation]:
        if reservation_id in self._reservations:
            return self._reservations[reservation_id]
        return self.store._reservations.get(reservation_id)

    async def insert_reservation(self, reservation: Reservation) -> Reservation:
        if await self.get_reservation(reservation.id) is not None:
            raise StorageConflictError(f"Reservation {reservation.id} already exists", resource="reservation")
        staged_codes = {r.reference_code for r in self._reservations.values()}
        if reservation.reference_code in self.store._references or reservation.reference_code in staged_codes:
            raise StorageConflictError(
                f"Reference code {reservation.reference_code} already in use",
                resource="reference_code"
            )
        self._reservations[reservation.id] = reservation
        return reservation

    async def compare_and_set_status(
        self,
        reservation_id: UUID,
        expected: ReservationStatus,
        new_status: ReservationStatus,
        changes: Optional[dict] = None
    ) -> Optional[Reservation]:
        current = await self.get_reservation(reservation_id)
        if current is None or current.status != expected:
            return None
        updated = current.model_copy(update={**(changes or {}), "status": new_status})
        self._reservations[reservation_id] = updated
        return updated

    async def adjust_available_spots(self, space_id: UUID, delta: int) -> Optional[int]:
        space = self._spaces.get(space_id) or self.store._spaces.get(space_id)
        if space is None:
            logger.warning(f"Cannot adjust spots for unknown space {space_id}")
            return None

        target = space.available_spots + delta
        clamped = min(max(target, 0), space.total_spots)
        if clamped != target:
            logger.warning(
                f"Spot counter for space {space_id} clamped to {clamped} "
                f"(requested {space.available_spots} {delta:+d})"
            )
        self._spaces[space_id] = space.model_copy(update={"available_spots": clamped})
        return clamped

    async def get_payment(self, reservation_id: UUID) -> Optional[Payment]:
        if reservation_id in self._payments:
            return self._payments[reservation_id]
        return self.store._payments.get(reservation_id)

    async def save_payment(self, payment: Payment) -> Payment:
        self._payments[payment.reservation_id] = payment
        return payment

    async def append_history(self, change: StatusChange) -> None:
        self._history.append(change)

    def commit(self):
        for reservation in self._reservations.values():
            owner = self.store._references.get(reservation.reference_code)
            if owner is not None and owner != reservation.id:
                raise StorageConflictError(
                    f"Reference code {reservation.reference_code} already in use",
                    resource="reference_code"
                )

        for reservation in self._reservations.values():
            self.store._reservations[reservation.id] = reservation
            self.store._references[reservation.reference_code] = reservation.id
        self.store._spaces.update(self._spaces)
        self.store._payments.update(self._payments)
        for change in self._history:
            self.store._history[change.reservation_id].append(change)


class InMemoryReservationStore(ReservationStore):
    """
    Dict-backed store for tests and single-process deployments

    Isolation comes from a per-space lock held for the whole transaction.
    Also serves as the space directory for the spaces it was given.
    """

    def __init__(self, spaces: Iterable[SpaceInfo] = (), locks: Optional[SpaceLocks] = None):
        self.locks = locks or LocalSpaceLocks()
        self._spaces: Dict[UUID, SpaceInfo] = {space.id: space for space in spaces}
        self._reservations: Dict[UUID, Reservation] = {}
        self._references: Dict[str, UUID] = {}
        self._payments: Dict[UUID, Payment] = {}
        self._history: Dict[UUID, List[StatusChange]] = defaultdict(list)

    # ============================================================
    # Space Directory
    # ============================================================

    def add_space(self, space: SpaceInfo) -> SpaceInfo:
        self._spaces[space.id] = space
        return space

    async def get_space(self, space_id: UUID) -> Optional[SpaceInfo]:
        return self._spaces.get(space_id)

    # ============================================================
    # Transactions
    # ============================================================

    @asynccontextmanager
    async def transaction(self, space_id: UUID) -> AsyncIterator[StoreTransaction]:
        async with self.locks.hold(space_id):
            tx = InMemoryTransaction(self)
            yield tx
            tx.commit()

    # ============================================================
    # Queries
    # ============================================================

    async def get_reservation(self, reservation_id: UUID) -> Optional[Reservation]:
        return self._reservations.get(reservation_id)

    async def get_reservation_by_reference(self, reference_code: str) -> Optional[Reservation]:
        reservation_id = self._references.get(reference_code.strip().upper())
        if reservation_id is None:
            return None
        return self._reservations.get(reservation_id)

    async def list_reservations(
        self,
        filters: ReservationFilter,
        requester_id: Optional[UUID] = None,
        space_owner_id: Optional[UUID] = None
    ) -> ReservationPage:
        matches = []
        for r in self._reservations.values():
            if requester_id is not None and r.requester_id != requester_id:
                continue
            if space_owner_id is not None and r.space_owner_id != space_owner_id:
                continue
            if filters.status is not None and r.status != filters.status:
                continue
            if filters.space_id is not None and r.space_id != filters.space_id:
                continue
            if filters.start_date is not None and r.end_time < filters.start_date:
                continue
            if filters.end_date is not None and r.start_time > filters.end_date:
                continue
            matches.append(r)

        matches.sort(key=lambda r: (r.start_time, r.created_at), reverse=True)
        items = matches[filters.offset:filters.offset + filters.page_size]
        return ReservationPage(
            items=items,
            total=len(matches),
            page=filters.page,
            page_size=filters.page_size
        )

    async def find_expirable(
        self,
        pending_created_before: datetime,
        payment_changed_before: datetime,
        now: datetime,
        limit: int = 500
    ) -> List[Reservation]:
        due = [
            r for r in self._reservations.values()
            if is_expirable(r, pending_created_before, payment_changed_before, now)
        ]
        due.sort(key=lambda r: r.created_at)
        return due[:limit]

    async def get_payment(self, reservation_id: UUID) -> Optional[Payment]:
        return self._payments.get(reservation_id)

    async def get_history(self, reservation_id: UUID) -> List[StatusChange]:
        return list(self._history.get(reservation_id, []))
