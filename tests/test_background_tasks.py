"""
Tests for the reservation expiry job

Coverage:
- Approval timeout and window start for Pending
- Payment timeout and window end for AwaitingPayment
- Refund of a charge left on a pending payment
- Confirmed and terminal reservations are never touched
- Races with the engine are skipped, not raised
- Start/stop of the polling loop
"""
import asyncio
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

from parking_reservations.background_tasks import ReservationExpiryJob
from parking_reservations.exceptions import IllegalTransitionError, StorageConflictError
from parking_reservations.metrics import registry
from parking_reservations.models import Payment, PaymentStatus, PricingMode, ReservationStatus, VehicleInfo

from conftest import at


@pytest.fixture
def job(engine, settings):
    return ReservationExpiryJob(engine, settings)


async def book(engine, requester_id, space, start, end):
    return await engine.create_reservation(
        requester_id, space.id, start, end, PricingMode.HOURLY, VehicleInfo(plate="MH12XY0001")
    )


class TestPendingExpiry:
    """Pending reservations expire after the approval timeout or once their window starts"""

    @pytest.mark.asyncio
    async def test_unapproved_past_timeout_expires(self, engine, job, store, clock, notifier, space, requester_id):
        reservation = await book(engine, requester_id, space, at(9, day=2), at(10, day=2))

        clock.advance(minutes=61)
        assert await job.run_once() == 1

        expired = await store.get_reservation(reservation.id)
        assert expired.status == ReservationStatus.EXPIRED
        assert notifier.types_for(requester_id) == ["booking.expired"]

        history = await store.get_history(reservation.id)
        assert history[-1].actor_id is None

    @pytest.mark.asyncio
    async def test_unapproved_within_timeout_is_kept(self, engine, job, store, clock, space, requester_id):
        reservation = await book(engine, requester_id, space, at(9, day=2), at(10, day=2))

        clock.advance(minutes=30)
        assert await job.run_once() == 0
        assert (await store.get_reservation(reservation.id)).status == ReservationStatus.PENDING

    @pytest.mark.asyncio
    async def test_unapproved_expires_once_window_started(self, engine, job, store, clock, space, requester_id):
        reservation = await book(engine, requester_id, space, at(8, 30), at(9, 30))

        clock.set(at(8, 31))
        assert await job.run_once() == 1
        assert (await store.get_reservation(reservation.id)).status == ReservationStatus.EXPIRED


class TestPaymentExpiry:
    """AwaitingPayment reservations expire after the payment timeout counted from approval"""

    @pytest.mark.asyncio
    async def test_unpaid_past_timeout_expires(self, engine, job, store, clock, space, requester_id, owner_id):
        reservation = await book(engine, requester_id, space, at(9, day=2), at(10, day=2))
        clock.set(at(8, 50))
        await engine.approve(reservation.id, owner_id)

        clock.set(at(9, 15))
        assert await job.run_once() == 0

        clock.set(at(9, 21))
        assert await job.run_once() == 1
        assert (await store.get_reservation(reservation.id)).status == ReservationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_unpaid_expires_once_window_ended(self, settings, engine, store, clock, space, requester_id, owner_id):
        job = ReservationExpiryJob(engine, settings.model_copy(update={"payment_timeout_minutes": 600}))
        reservation = await book(engine, requester_id, space, at(9), at(10))
        await engine.approve(reservation.id, owner_id)

        clock.set(at(9, 30))
        assert await job.run_once() == 0

        clock.set(at(10))
        assert await job.run_once() == 1

    @pytest.mark.asyncio
    async def test_expiry_frees_the_window(self, engine, job, clock, space, requester_id, owner_id):
        reservation = await book(engine, requester_id, space, at(9, day=2), at(10, day=2))
        await engine.approve(reservation.id, owner_id)

        clock.advance(minutes=31)
        await job.run_once()

        availability = await engine.check_availability(space.id, at(9, day=2), at(10, day=2))
        assert availability.available is True

    @pytest.mark.asyncio
    async def test_expiry_refunds_charge_left_on_a_pending_payment(
        self, engine, job, store, gateway, clock, space, requester_id, owner_id
    ):
        reservation = await book(engine, requester_id, space, at(9, day=2), at(10, day=2))
        await engine.approve(reservation.id, owner_id)
        payment = Payment(
            id=uuid4(),
            reservation_id=reservation.id,
            amount=reservation.total_amount,
            status=PaymentStatus.PENDING,
            transaction_id="TXN-20250601080000-ABCDEF12",
            created_at=clock(),
        )
        async with store.transaction(space.id) as tx:
            await tx.save_payment(payment)

        clock.advance(minutes=31)
        assert await job.run_once() == 1

        assert gateway.refunds == [(payment.id, "TXN-20250601080000-ABCDEF12", Decimal("12.30"))]
        refunded = await store.get_payment(reservation.id)
        assert refunded.status == PaymentStatus.REFUNDED
        assert (await store.get_reservation(reservation.id)).status == ReservationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_plain_unpaid_expiry_makes_no_refund_call(self, engine, job, gateway, clock, space, requester_id, owner_id):
        reservation = await book(engine, requester_id, space, at(9, day=2), at(10, day=2))
        await engine.approve(reservation.id, owner_id)

        clock.advance(minutes=31)
        assert await job.run_once() == 1
        assert gateway.refunds == []


class TestUntouchedReservations:

    @pytest.mark.asyncio
    async def test_confirmed_and_terminal_never_expire(self, engine, job, store, clock, space, requester_id, owner_id):
        confirmed = await book(engine, requester_id, space, at(9, day=3), at(10, day=3))
        await engine.approve(confirmed.id, owner_id)
        await engine.process_payment(confirmed.id, requester_id)

        cancelled = await book(engine, requester_id, space, at(11, day=3), at(12, day=3))
        await engine.cancel(cancelled.id, requester_id)

        clock.advance(days=1)
        assert await job.run_once() == 0
        assert (await store.get_reservation(confirmed.id)).status == ReservationStatus.CONFIRMED
        assert (await store.get_reservation(cancelled.id)).status == ReservationStatus.CANCELLED


class TestRaces:

    @pytest.mark.asyncio
    async def test_reservation_approved_meanwhile_is_skipped(self, engine, job, clock, space, requester_id, monkeypatch):
        await book(engine, requester_id, space, at(9, day=2), at(10, day=2))
        monkeypatch.setattr(
            engine, "expire",
            AsyncMock(side_effect=IllegalTransitionError("changed state concurrently", "awaiting_payment", "expire"))
        )

        clock.advance(minutes=61)
        assert await job.run_once() == 0
        engine.expire.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, engine, job, store, clock, space, requester_id, monkeypatch):
        first = await book(engine, requester_id, space, at(9, day=2), at(10, day=2))
        second = await book(engine, requester_id, space, at(11, day=2), at(12, day=2))
        real_expire = engine.expire

        async def flaky_expire(reservation_id):
            if reservation_id == first.id:
                raise StorageConflictError("space busy")
            return await real_expire(reservation_id)

        monkeypatch.setattr(engine, "expire", flaky_expire)

        clock.advance(minutes=61)
        assert await job.run_once() == 1
        assert (await store.get_reservation(first.id)).status == ReservationStatus.PENDING
        assert (await store.get_reservation(second.id)).status == ReservationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expired_metric(self, engine, job, clock, space, requester_id):
        before = registry.get_sample_value("expired_reservations_total") or 0
        await book(engine, requester_id, space, at(9, day=2), at(10, day=2))

        clock.advance(minutes=61)
        await job.run_once()

        assert registry.get_sample_value("expired_reservations_total") == before + 1


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, job):
        await job.start()
        assert job.running is True
        first_task = job._task

        await job.start()  # already running
        assert job._task is first_task

        await job.stop()
        assert job.running is False
        assert job._task is None
        assert first_task.cancelled() or first_task.done()

    @pytest.mark.asyncio
    async def test_loop_survives_scan_errors(self, engine, settings, monkeypatch):
        job = ReservationExpiryJob(engine, settings.model_copy(update={"expiry_scan_interval_seconds": 1}))
        monkeypatch.setattr(job, "run_once", AsyncMock(side_effect=RuntimeError("database went away")))

        await job.start()
        await asyncio.sleep(1.2)

        job.run_once.assert_awaited()
        assert not job._task.done()
        await job.stop()
