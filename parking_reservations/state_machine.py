"""
Reservation lifecycle state machine

Pure rules only: which event is legal from which status, who may
trigger it, and which side effects the engine must apply with it.
The engine applies the result atomically against the store.

    Pending ──approve──▶ AwaitingPayment ──payment ok──▶ Confirmed ──check-in──▶ InProgress ──check-out──▶ Completed
       │                      │                              │
       ├─reject─▶ Rejected    ├─payment failed/expire─▶ Expired
       ├─expire─▶ Expired     └─cancel─▶ Cancelled          └─cancel (before start)─▶ Cancelled
       └─cancel─▶ Cancelled
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple
from uuid import UUID

from .exceptions import ForbiddenError, IllegalTransitionError, OutsideWindowError
from .models import LifecycleEvent, Reservation, ReservationStatus, TERMINAL_STATUSES


class Party(str, Enum):
    """Who may trigger an event"""
    REQUESTER = "requester"
    OWNER = "owner"
    SYSTEM = "system"


class Recipient(str, Enum):
    """Who is notified after a transition commits"""
    REQUESTER = "requester"
    OWNER = "owner"
    COUNTERPARTY = "counterparty"  # whichever of requester/owner did not act


class NotificationType(str, Enum):
    BOOKING_REQUESTED = "booking.requested"
    BOOKING_APPROVED = "booking.approved"
    BOOKING_REJECTED = "booking.rejected"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_EXPIRED = "booking.expired"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    BOOKING_CHECKIN = "booking.checkin"
    BOOKING_CHECKOUT = "booking.checkout"
    REFUND_PROCESSED = "refund.processed"


@dataclass(frozen=True)
class Transition:
    """One edge of the lifecycle graph and its side effects"""
    source: ReservationStatus
    event: LifecycleEvent
    target: ReservationStatus
    notify: Recipient
    notification: NotificationType
    spot_delta: int = 0
    refund: bool = False
    within_window_only: bool = False
    before_start_only: bool = False


S = ReservationStatus
E = LifecycleEvent

TRANSITIONS: Tuple[Transition, ...] = (
    Transition(S.PENDING, E.APPROVE, S.AWAITING_PAYMENT, Recipient.REQUESTER, NotificationType.BOOKING_APPROVED),
    Transition(S.PENDING, E.REJECT, S.REJECTED, Recipient.REQUESTER, NotificationType.BOOKING_REJECTED),
    Transition(S.PENDING, E.CANCEL, S.CANCELLED, Recipient.COUNTERPARTY, NotificationType.BOOKING_CANCELLED),
    Transition(S.PENDING, E.EXPIRE, S.EXPIRED, Recipient.REQUESTER, NotificationType.BOOKING_EXPIRED),

    Transition(S.AWAITING_PAYMENT, E.PAYMENT_SUCCEEDED, S.CONFIRMED, Recipient.REQUESTER,
               NotificationType.PAYMENT_COMPLETED, spot_delta=-1),
    Transition(S.AWAITING_PAYMENT, E.PAYMENT_FAILED, S.EXPIRED, Recipient.REQUESTER, NotificationType.PAYMENT_FAILED),
    Transition(S.AWAITING_PAYMENT, E.EXPIRE, S.EXPIRED, Recipient.REQUESTER, NotificationType.BOOKING_EXPIRED),
    Transition(S.AWAITING_PAYMENT, E.CANCEL, S.CANCELLED, Recipient.COUNTERPARTY, NotificationType.BOOKING_CANCELLED),

    Transition(S.CONFIRMED, E.CHECK_IN, S.IN_PROGRESS, Recipient.OWNER, NotificationType.BOOKING_CHECKIN,
               within_window_only=True),
    Transition(S.CONFIRMED, E.CANCEL, S.CANCELLED, Recipient.COUNTERPARTY, NotificationType.BOOKING_CANCELLED,
               spot_delta=1, refund=True, before_start_only=True),

    Transition(S.IN_PROGRESS, E.CHECK_OUT, S.COMPLETED, Recipient.OWNER, NotificationType.BOOKING_CHECKOUT,
               spot_delta=1),
)

TRANSITION_TABLE: Dict[Tuple[ReservationStatus, LifecycleEvent], Transition] = {
    (t.source, t.event): t for t in TRANSITIONS
}

EVENT_PARTIES: Dict[LifecycleEvent, FrozenSet[Party]] = {
    E.APPROVE: frozenset({Party.OWNER}),
    E.REJECT: frozenset({Party.OWNER}),
    E.CANCEL: frozenset({Party.REQUESTER, Party.OWNER}),
    E.EXPIRE: frozenset({Party.SYSTEM}),
    E.PAYMENT_SUCCEEDED: frozenset({Party.SYSTEM}),
    E.PAYMENT_FAILED: frozenset({Party.SYSTEM}),
    E.CHECK_IN: frozenset({Party.REQUESTER}),
    E.CHECK_OUT: frozenset({Party.REQUESTER}),
}

del S, E


def allowed_events(status: ReservationStatus) -> List[LifecycleEvent]:
    """Events that have an edge out of status"""
    return [t.event for t in TRANSITIONS if t.source == status]


class LifecycleStateMachine:
    """Authorizes and resolves lifecycle events"""

    def authorize(self, reservation: Reservation, event: LifecycleEvent, actor_id: Optional[UUID]) -> Party:
        """
        Decide which party the actor acts as for this event

        Depends only on the event and the reservation's parties, never on
        its status. actor_id None means the system itself.
        """
        event = LifecycleEvent(event)
        parties = EVENT_PARTIES[event]

        if actor_id is None:
            if Party.SYSTEM in parties:
                return Party.SYSTEM
            raise ForbiddenError(f"Event {event.value} requires a user")

        if Party.REQUESTER in parties and actor_id == reservation.requester_id:
            return Party.REQUESTER
        if Party.OWNER in parties and actor_id == reservation.space_owner_id:
            return Party.OWNER

        raise ForbiddenError(
            f"User may not {event.value} reservation {reservation.reference_code}",
            actor_id=actor_id
        )

    def resolve(self, reservation: Reservation, event: LifecycleEvent, now: datetime) -> Transition:
        """Find the edge for event from the current status, enforcing timing rules"""
        event = LifecycleEvent(event)
        status = ReservationStatus(reservation.status)
        transition = TRANSITION_TABLE.get((status, event))

        if transition is None:
            if status in TERMINAL_STATUSES:
                message = f"Reservation {reservation.reference_code} is {status.value} and can no longer change"
            else:
                message = f"Cannot {event.value} a reservation that is {status.value}"
            raise IllegalTransitionError(message, status.value, event.value)

        if transition.within_window_only and not (reservation.start_time <= now <= reservation.end_time):
            raise OutsideWindowError(reservation.id, now)

        if transition.before_start_only and now >= reservation.start_time:
            raise IllegalTransitionError(
                f"Cannot {event.value} a {status.value} reservation after its window has started",
                status.value,
                event.value
            )

        return transition

    def changes_for(self, transition: Transition, now: datetime, reason: Optional[str] = None) -> dict:
        """Field updates written together with the status change"""
        changes = {"updated_at": now, "status_changed_at": now}

        if transition.target == ReservationStatus.IN_PROGRESS:
            changes["check_in_time"] = now
        elif transition.target == ReservationStatus.COMPLETED:
            changes["check_out_time"] = now
        elif transition.target in (ReservationStatus.CANCELLED, ReservationStatus.REJECTED):
            changes["cancelled_at"] = now
            changes["cancellation_reason"] = reason

        return changes

    def recipient(self, transition: Transition, reservation: Reservation, acting_party: Party) -> UUID:
        """User id to notify after the transition commits"""
        if transition.notify == Recipient.REQUESTER:
            return reservation.requester_id
        if transition.notify == Recipient.OWNER:
            return reservation.space_owner_id
        if acting_party == Party.OWNER:
            return reservation.requester_id
        return reservation.space_owner_id
