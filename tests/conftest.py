"""
Shared fixtures for reservation engine tests
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from parking_reservations.config import Settings
from parking_reservations.engine import ReservationEngine
from parking_reservations.models import (
    PricingMode,
    RateSchedule,
    Reservation,
    ReservationStatus,
    SpaceInfo,
    VehicleInfo,
)
from parking_reservations.payments import MockPaymentGateway
from parking_reservations.store import InMemoryReservationStore

NOW = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    """UTC timestamp in June 2025"""
    return datetime(2025, 6, day, hour, minute, tzinfo=timezone.utc)


class FrozenClock:
    """Controllable clock for the engine"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime):
        self.now = now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotificationSink:
    """Notification sink that keeps everything it is sent"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def notify(self, user_id, notification_type, payload):
        if self.fail:
            raise ConnectionError("notification transport down")
        self.sent.append((user_id, notification_type, payload))

    def types_for(self, user_id):
        return [t for (u, t, _) in self.sent if u == user_id]


def make_reservation(**overrides) -> Reservation:
    """Build a reservation directly, bypassing the engine"""
    data = dict(
        id=uuid4(),
        reference_code="PKG-20250601-ABCDEF12",
        requester_id=uuid4(),
        space_id=uuid4(),
        space_owner_id=uuid4(),
        start_time=at(9),
        end_time=at(11),
        pricing_mode=PricingMode.HOURLY,
        duration_units=2,
        vehicle=VehicleInfo(plate="KA01AB1234"),
        base_amount=Decimal("20.00"),
        tax_amount=Decimal("3.60"),
        service_fee=Decimal("1.00"),
        total_amount=Decimal("24.60"),
        status=ReservationStatus.PENDING,
        created_at=NOW,
    )
    data.update(overrides)
    return Reservation(**data)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        storage_retry_attempts=3,
        lock_wait_seconds=1.0,
        pending_approval_timeout_minutes=60,
        payment_timeout_minutes=30,
        discount_codes={"FIRST10": {"percent": "10"}, "SAVE50": {"amount": "50"}},
    )


@pytest.fixture
def owner_id():
    return uuid4()


@pytest.fixture
def requester_id():
    return uuid4()


@pytest.fixture
def space(owner_id):
    return SpaceInfo(
        id=uuid4(),
        owner_id=owner_id,
        rates=RateSchedule(
            hourly_rate=Decimal("10"),
            daily_rate=Decimal("100"),
            weekly_rate=Decimal("500"),
        ),
        total_spots=3,
        available_spots=3,
    )


@pytest.fixture
def vehicle():
    return VehicleInfo(plate=" ka01ab1234 ", model="Swift")


@pytest.fixture
def store(space):
    return InMemoryReservationStore(spaces=[space])


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def engine(store, gateway, notifier, settings, clock):
    return ReservationEngine(
        store,
        spaces=store,
        payment_gateway=gateway,
        notifier=notifier,
        settings=settings,
        clock=clock,
    )
