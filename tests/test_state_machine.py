"""
Unit tests for the reservation lifecycle state machine

Tests cover:
- Every table edge is reachable by the right actor
- Every other (status, event) pair is illegal
- No transition ever returns to an earlier state
- Authorization is independent of status
- Check-in and cancellation timing
"""
import itertools
import pytest
from datetime import timedelta
from uuid import uuid4

from parking_reservations.exceptions import ForbiddenError, IllegalTransitionError, OutsideWindowError
from parking_reservations.models import LifecycleEvent, ReservationStatus, TERMINAL_STATUSES
from parking_reservations.state_machine import (
    EVENT_PARTIES,
    TRANSITION_TABLE,
    TRANSITIONS,
    LifecycleStateMachine,
    NotificationType,
    Party,
    allowed_events,
)

from conftest import NOW, at, make_reservation


@pytest.fixture
def machine():
    return LifecycleStateMachine()


def actor_for(reservation, event):
    parties = EVENT_PARTIES[event]
    if Party.SYSTEM in parties:
        return None
    if Party.REQUESTER in parties:
        return reservation.requester_id
    return reservation.space_owner_id


def legal_time(transition):
    """A 'now' that satisfies the transition's timing rule for a 09:00-11:00 window"""
    if transition.within_window_only:
        return at(9)
    return NOW


# ============================================================
# Graph
# ============================================================

@pytest.mark.parametrize("transition", TRANSITIONS, ids=lambda t: f"{t.source.value}-{t.event.value}")
def test_every_edge_is_reachable(machine, transition):
    reservation = make_reservation(status=transition.source)
    actor = actor_for(reservation, transition.event)

    machine.authorize(reservation, transition.event, actor)
    resolved = machine.resolve(reservation, transition.event, legal_time(transition))

    assert resolved.target == transition.target


ILLEGAL_PAIRS = [
    (status, event)
    for status, event in itertools.product(ReservationStatus, LifecycleEvent)
    if (status, event) not in TRANSITION_TABLE
]


@pytest.mark.parametrize("status,event", ILLEGAL_PAIRS, ids=lambda v: v.value)
def test_events_not_in_table_are_illegal(machine, status, event):
    reservation = make_reservation(status=status)

    with pytest.raises(IllegalTransitionError) as exc_info:
        machine.resolve(reservation, event, at(9))

    assert exc_info.value.current_state == status.value
    assert exc_info.value.event == event.value


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
def test_terminal_states_have_no_outgoing_edges(status):
    assert allowed_events(status) == []


def test_no_transition_returns_to_a_prior_state():
    """The lifecycle graph has no cycles, so no state is ever revisited"""
    edges = {}
    for t in TRANSITIONS:
        edges.setdefault(t.source, set()).add(t.target)

    def reachable(start):
        seen, stack = set(), [start]
        while stack:
            for nxt in edges.get(stack.pop(), ()):
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        return seen

    for status in ReservationStatus:
        assert status not in reachable(status)


def test_pending_is_the_only_state_without_incoming_edges():
    targets = {t.target for t in TRANSITIONS}
    assert set(ReservationStatus) - targets == {ReservationStatus.PENDING}


# ============================================================
# Authorization
# ============================================================

@pytest.mark.parametrize("status", list(ReservationStatus), ids=lambda s: s.value)
@pytest.mark.parametrize("event", list(LifecycleEvent), ids=lambda e: e.value)
def test_stranger_is_forbidden_regardless_of_status(machine, status, event):
    reservation = make_reservation(status=status)

    with pytest.raises(ForbiddenError):
        machine.authorize(reservation, event, uuid4())


@pytest.mark.parametrize("event", [LifecycleEvent.APPROVE, LifecycleEvent.REJECT])
def test_requester_cannot_approve_or_reject(machine, event):
    reservation = make_reservation()
    with pytest.raises(ForbiddenError):
        machine.authorize(reservation, event, reservation.requester_id)


@pytest.mark.parametrize("event", [LifecycleEvent.CHECK_IN, LifecycleEvent.CHECK_OUT])
def test_owner_cannot_check_in_or_out(machine, event):
    reservation = make_reservation(status=ReservationStatus.CONFIRMED)
    with pytest.raises(ForbiddenError):
        machine.authorize(reservation, event, reservation.space_owner_id)


@pytest.mark.parametrize("event", [
    LifecycleEvent.EXPIRE,
    LifecycleEvent.PAYMENT_SUCCEEDED,
    LifecycleEvent.PAYMENT_FAILED,
])
def test_system_events_reject_users(machine, event):
    reservation = make_reservation(status=ReservationStatus.AWAITING_PAYMENT)

    assert machine.authorize(reservation, event, None) == Party.SYSTEM
    with pytest.raises(ForbiddenError):
        machine.authorize(reservation, event, reservation.requester_id)
    with pytest.raises(ForbiddenError):
        machine.authorize(reservation, event, reservation.space_owner_id)


def test_user_events_reject_system(machine):
    reservation = make_reservation()
    with pytest.raises(ForbiddenError):
        machine.authorize(reservation, LifecycleEvent.CANCEL, None)


def test_cancel_identifies_acting_party(machine):
    reservation = make_reservation()
    assert machine.authorize(reservation, LifecycleEvent.CANCEL, reservation.requester_id) == Party.REQUESTER
    assert machine.authorize(reservation, LifecycleEvent.CANCEL, reservation.space_owner_id) == Party.OWNER


# ============================================================
# Timing
# ============================================================

@pytest.fixture
def confirmed():
    return make_reservation(status=ReservationStatus.CONFIRMED)


def test_check_in_exactly_at_start_succeeds(machine, confirmed):
    transition = machine.resolve(confirmed, LifecycleEvent.CHECK_IN, confirmed.start_time)
    assert transition.target == ReservationStatus.IN_PROGRESS


def test_check_in_exactly_at_end_succeeds(machine, confirmed):
    transition = machine.resolve(confirmed, LifecycleEvent.CHECK_IN, confirmed.end_time)
    assert transition.target == ReservationStatus.IN_PROGRESS


@pytest.mark.parametrize("offset", [timedelta(seconds=-1), timedelta(hours=-3)])
def test_check_in_before_start_is_outside_window(machine, confirmed, offset):
    with pytest.raises(OutsideWindowError):
        machine.resolve(confirmed, LifecycleEvent.CHECK_IN, confirmed.start_time + offset)


def test_check_in_after_end_is_outside_window(machine, confirmed):
    with pytest.raises(OutsideWindowError) as exc_info:
        machine.resolve(confirmed, LifecycleEvent.CHECK_IN, confirmed.end_time + timedelta(seconds=1))
    assert exc_info.value.error_code == "OUTSIDE_WINDOW"


def test_confirmed_cancel_only_before_start(machine, confirmed):
    before = machine.resolve(confirmed, LifecycleEvent.CANCEL, confirmed.start_time - timedelta(minutes=1))
    assert before.target == ReservationStatus.CANCELLED
    assert before.refund is True
    assert before.spot_delta == 1

    with pytest.raises(IllegalTransitionError):
        machine.resolve(confirmed, LifecycleEvent.CANCEL, confirmed.start_time)


def test_pending_cancel_allowed_after_start(machine):
    reservation = make_reservation(status=ReservationStatus.PENDING)
    transition = machine.resolve(reservation, LifecycleEvent.CANCEL, reservation.end_time)
    assert transition.target == ReservationStatus.CANCELLED
    assert transition.spot_delta == 0


def test_in_progress_cannot_be_cancelled(machine):
    reservation = make_reservation(status=ReservationStatus.IN_PROGRESS)
    with pytest.raises(IllegalTransitionError):
        machine.resolve(reservation, LifecycleEvent.CANCEL, NOW)


# ============================================================
# Side Effects
# ============================================================

def test_spot_counter_only_moves_when_a_spot_is_held():
    deltas = {(t.source, t.event): t.spot_delta for t in TRANSITIONS if t.spot_delta}
    assert deltas == {
        (ReservationStatus.AWAITING_PAYMENT, LifecycleEvent.PAYMENT_SUCCEEDED): -1,
        (ReservationStatus.CONFIRMED, LifecycleEvent.CANCEL): 1,
        (ReservationStatus.IN_PROGRESS, LifecycleEvent.CHECK_OUT): 1,
    }


def test_changes_for_sets_lifecycle_timestamps(machine):
    now = at(9, 30)

    check_in = machine.changes_for(TRANSITION_TABLE[(ReservationStatus.CONFIRMED, LifecycleEvent.CHECK_IN)], now)
    assert check_in["check_in_time"] == now
    assert check_in["status_changed_at"] == now

    check_out = machine.changes_for(TRANSITION_TABLE[(ReservationStatus.IN_PROGRESS, LifecycleEvent.CHECK_OUT)], now)
    assert check_out["check_out_time"] == now
    assert "check_in_time" not in check_out

    reject = machine.changes_for(
        TRANSITION_TABLE[(ReservationStatus.PENDING, LifecycleEvent.REJECT)], now, "Space under repair"
    )
    assert reject["cancelled_at"] == now
    assert reject["cancellation_reason"] == "Space under repair"


def test_cancel_notifies_the_other_party(machine):
    reservation = make_reservation()
    transition = TRANSITION_TABLE[(ReservationStatus.PENDING, LifecycleEvent.CANCEL)]

    assert transition.notification == NotificationType.BOOKING_CANCELLED
    assert machine.recipient(transition, reservation, Party.REQUESTER) == reservation.space_owner_id
    assert machine.recipient(transition, reservation, Party.OWNER) == reservation.requester_id


def test_check_in_notifies_owner(machine):
    reservation = make_reservation(status=ReservationStatus.CONFIRMED)
    transition = TRANSITION_TABLE[(ReservationStatus.CONFIRMED, LifecycleEvent.CHECK_IN)]
    assert machine.recipient(transition, reservation, Party.REQUESTER) == reservation.space_owner_id
