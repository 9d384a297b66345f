"""
Reservation engine

Orchestrates pricing, availability and the lifecycle state machine
against a ReservationStore. Every write happens inside one space
transaction; payment, refund and notification calls happen only after
that transaction has committed.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, Union
from uuid import UUID

from .availability import AvailabilityChecker
from .config import Settings, get_settings
from .exceptions import (
    ForbiddenError,
    IllegalTransitionError,
    InvalidWindowError,
    NotFoundError,
    PaymentFailedError,
    ReservationError,
    SlotUnavailableError,
    SpaceUnavailableError,
    StorageConflictError,
)
from .logging_config import get_logger
from .metrics import (
    time_reservation,
    track_notification_failure,
    track_refund_failure,
    track_reservation_attempt,
    track_storage_conflict,
    track_transition,
)
from .models import (
    AvailabilityResult,
    LifecycleEvent,
    Payment,
    PaymentStatus,
    PriceBreakdown,
    PricingMode,
    Reservation,
    ReservationFilter,
    ReservationPage,
    ReservationStatus,
    SpaceInfo,
    StatusChange,
    VehicleInfo,
)
from .notifications import LoggingNotificationSink, NotificationSink
from .payments import ChargeResult, MockPaymentGateway, PaymentGateway, RefundPolicy, RefundResult
from .pricing import CatalogDiscountPolicy, DiscountPolicy, quote
from .state_machine import LifecycleStateMachine, NotificationType, Party, Transition
from .store import ReservationStore, StoreTransaction
from .utils import ensure_utc, generate_reference_code, utcnow

logger = get_logger(__name__)

TransactionHook = Callable[[StoreTransaction, Reservation, datetime], Awaitable[None]]


class SpaceDirectory(Protocol):
    """Space lookup: owner, rates, active flag and spot counts"""

    async def get_space(self, space_id: UUID) -> Optional[SpaceInfo]:
        ...


class ReservationEngine:
    """
    Entry point for creating reservations and driving their lifecycle

    Usage:
        store = InMemoryReservationStore(spaces=[space])
        engine = ReservationEngine(store, spaces=store)
        reservation = await engine.create_reservation(
            requester_id, space.id, start, end, PricingMode.HOURLY, VehicleInfo(plate="KA01AB1234")
        )
        await engine.approve(reservation.id, space.owner_id)
        await engine.process_payment(reservation.id, requester_id)
    """

    def __init__(
        self,
        store: ReservationStore,
        spaces: SpaceDirectory,
        payment_gateway: Optional[PaymentGateway] = None,
        notifier: Optional[NotificationSink] = None,
        discount_policy: Optional[DiscountPolicy] = None,
        refund_policy: Optional[RefundPolicy] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.spaces = spaces
        self.payment_gateway = payment_gateway or MockPaymentGateway()
        self.notifier = notifier or LoggingNotificationSink()
        self.discount_policy = discount_policy or CatalogDiscountPolicy.from_settings(self.settings)
        self.refund_policy = refund_policy or RefundPolicy.from_settings(self.settings)
        self.clock = clock or utcnow
        self.availability = AvailabilityChecker(store)
        self.state_machine = LifecycleStateMachine()

    def now(self) -> datetime:
        return ensure_utc(self.clock())

    # ============================================================
    # Quotes & Availability
    # ============================================================

    async def quote(
        self,
        space_id: UUID,
        start_time: datetime,
        end_time: datetime,
        pricing_mode: PricingMode = PricingMode.HOURLY,
        discount_code: Optional[str] = None
    ) -> PriceBreakdown:
        """Price preview; books nothing"""
        start_time, end_time = self._validate_window(start_time, end_time)
        space = await self._get_bookable_space(space_id, pricing_mode)
        return quote(space.rates, pricing_mode, start_time, end_time, discount_code, self.discount_policy)

    async def check_availability(
        self,
        space_id: UUID,
        start_time: datetime,
        end_time: datetime
    ) -> AvailabilityResult:
        """Advisory availability read; create_reservation re-checks under lock"""
        start_time, end_time = self._validate_window(start_time, end_time, require_future=False)
        space = await self.spaces.get_space(space_id)
        if space is None:
            raise NotFoundError("Space", space_id)
        return await self.availability.find_conflicts(space.id, start_time, end_time)

    # ============================================================
    # Creation
    # ============================================================

    async def create_reservation(
        self,
        requester_id: UUID,
        space_id: UUID,
        start_time: datetime,
        end_time: datetime,
        pricing_mode: PricingMode,
        vehicle: VehicleInfo,
        discount_code: Optional[str] = None
    ) -> Reservation:
        """
        Create a reservation in Pending (AwaitingPayment for auto-approve spaces)

        Raises:
            InvalidWindowError: start not in the future or end not after start
            NotFoundError: space does not exist
            SpaceUnavailableError: space inactive or mode not offered
            SlotUnavailableError: window overlaps an active reservation
            StorageConflictError: contention persisted through every retry
        """
        with time_reservation():
            try:
                now = self.now()
                start_time, end_time = self._validate_window(start_time, end_time, now=now)
                space = await self._get_bookable_space(space_id, pricing_mode)
                price = quote(space.rates, pricing_mode, start_time, end_time, discount_code, self.discount_policy)
                initial_status = (
                    ReservationStatus.AWAITING_PAYMENT if space.auto_approve else ReservationStatus.PENDING
                )

                async def attempt() -> Reservation:
                    reservation = Reservation(
                        id=uuid.uuid4(),
                        reference_code=generate_reference_code(now),
                        requester_id=requester_id,
                        space_id=space.id,
                        space_owner_id=space.owner_id,
                        start_time=start_time,
                        end_time=end_time,
                        pricing_mode=price.pricing_mode,
                        duration_units=price.duration_units,
                        vehicle=vehicle,
                        base_amount=price.base_amount,
                        tax_amount=price.tax_amount,
                        service_fee=price.service_fee,
                        discount_amount=price.discount_amount,
                        total_amount=price.total_amount,
                        discount_code=price.discount_code,
                        status=initial_status,
                        created_at=now,
                        updated_at=now,
                        status_changed_at=now,
                    )
                    async with self.store.transaction(space.id) as tx:
                        if await self.availability.has_overlap(tx, space.id, start_time, end_time):
                            raise SlotUnavailableError(space.id, start_time, end_time)
                        await tx.insert_reservation(reservation)
                        await tx.append_history(StatusChange(
                            reservation_id=reservation.id,
                            to_status=initial_status,
                            actor_id=requester_id,
                            changed_at=now,
                        ))
                    return reservation

                reservation = await self._with_retry("create_reservation", attempt)

            except SlotUnavailableError:
                track_reservation_attempt("conflict")
                logger.info("reservation_conflict", space_id=str(space_id),
                            start_time=str(start_time), end_time=str(end_time))
                raise
            except StorageConflictError:
                track_reservation_attempt("error")
                raise
            except ReservationError:
                track_reservation_attempt("rejected")
                raise

        track_reservation_attempt("created")
        logger.info(
            "reservation_created",
            reservation_id=str(reservation.id),
            reference_code=reservation.reference_code,
            space_id=str(reservation.space_id),
            status=reservation.status.value,
            total_amount=str(reservation.total_amount),
            start_time=reservation.start_time.isoformat(),
            end_time=reservation.end_time.isoformat(),
        )

        await self._notify(space.owner_id, NotificationType.BOOKING_REQUESTED, reservation)
        if reservation.status == ReservationStatus.AWAITING_PAYMENT:
            await self._notify(reservation.requester_id, NotificationType.BOOKING_APPROVED, reservation)
        return reservation

    # ============================================================
    # Lifecycle Transitions
    # ============================================================

    async def approve(self, reservation_id: UUID, actor_id: UUID) -> Reservation:
        return await self.transition(reservation_id, LifecycleEvent.APPROVE, actor_id)

    async def reject(self, reservation_id: UUID, actor_id: UUID, reason: Optional[str] = None) -> Reservation:
        return await self.transition(reservation_id, LifecycleEvent.REJECT, actor_id, reason=reason)

    async def cancel(self, reservation_id: UUID, actor_id: UUID, reason: Optional[str] = None) -> Reservation:
        return await self.transition(reservation_id, LifecycleEvent.CANCEL, actor_id, reason=reason)

    async def check_in(self, reservation_id: UUID, actor_id: UUID) -> Reservation:
        return await self.transition(reservation_id, LifecycleEvent.CHECK_IN, actor_id)

    async def check_out(self, reservation_id: UUID, actor_id: UUID) -> Reservation:
        return await self.transition(reservation_id, LifecycleEvent.CHECK_OUT, actor_id)

    async def expire(self, reservation_id: UUID) -> Reservation:
        """System-initiated expiry (approval or payment timeout)"""
        return await self.transition(reservation_id, LifecycleEvent.EXPIRE, None)

    async def transition(
        self,
        reservation_id: UUID,
        event: LifecycleEvent,
        actor_id: Optional[UUID],
        reason: Optional[str] = None
    ) -> Reservation:
        """
        Apply one lifecycle event

        actor_id None means the system. Authorization is decided before the
        status is looked at; the status change itself is a compare-and-set
        inside the space transaction, together with any spot adjustment.
        """
        event = LifecycleEvent(event)
        if event in (LifecycleEvent.PAYMENT_SUCCEEDED, LifecycleEvent.PAYMENT_FAILED):
            reservation = await self._load(reservation_id)
            self.state_machine.authorize(reservation, event, actor_id)
            raise IllegalTransitionError(
                f"Payment outcomes for {reservation.reference_code} go through record_payment_result",
                reservation.status.value,
                event.value
            )
        return await self._apply_event(reservation_id, event, actor_id, reason)

    async def _apply_event(
        self,
        reservation_id: UUID,
        event: LifecycleEvent,
        actor_id: Optional[UUID],
        reason: Optional[str] = None,
        in_transaction: Optional[TransactionHook] = None,
        notify_extra: Optional[dict] = None
    ) -> Reservation:

        async def attempt() -> Tuple[Reservation, Transition, Party, Reservation]:
            reservation = await self._load(reservation_id)
            party = self.state_machine.authorize(reservation, event, actor_id)
            now = self.now()

            async with self.store.transaction(reservation.space_id) as tx:
                current = await tx.get_reservation(reservation.id)
                transition = self.state_machine.resolve(current, event, now)
                updated = await tx.compare_and_set_status(
                    current.id,
                    current.status,
                    transition.target,
                    self.state_machine.changes_for(transition, now, reason)
                )
                if updated is None:
                    raise IllegalTransitionError(
                        f"Reservation {current.reference_code} changed state concurrently",
                        current.status.value,
                        event.value
                    )
                if transition.spot_delta:
                    await tx.adjust_available_spots(current.space_id, transition.spot_delta)
                if in_transaction is not None:
                    await in_transaction(tx, updated, now)
                await tx.append_history(StatusChange(
                    reservation_id=current.id,
                    from_status=current.status,
                    to_status=transition.target,
                    event=event,
                    actor_id=actor_id,
                    reason=reason,
                    changed_at=now,
                ))
            return updated, transition, party, current

        updated, transition, party, previous = await self._with_retry(f"transition:{event.value}", attempt)

        track_transition(event.value, transition.target.value)
        logger.info(
            "reservation_transition",
            reservation_id=str(updated.id),
            reference_code=updated.reference_code,
            lifecycle_event=event.value,
            from_status=previous.status.value,
            to_status=updated.status.value,
            actor=party.value,
        )

        if transition.refund:
            await self._refund(updated, party)
        elif previous.status == ReservationStatus.AWAITING_PAYMENT and updated.status.is_terminal:
            await self._refund_unrecorded_charge(updated)

        extra = dict(notify_extra or {})
        if reason:
            extra["reason"] = reason
        await self._notify(
            self.state_machine.recipient(transition, updated, party),
            transition.notification,
            updated,
            **extra
        )
        return updated

    # ============================================================
    # Payments
    # ============================================================

    async def process_payment(self, reservation_id: UUID, actor_id: UUID) -> Reservation:
        """
        Charge the requester for an approved reservation

        On success the reservation becomes Confirmed; on decline or gateway
        error it becomes Expired and PaymentFailedError is raised.
        """
        reservation = await self._load(reservation_id)
        if actor_id != reservation.requester_id:
            raise ForbiddenError("Only the requester can pay for a reservation", actor_id=actor_id)

        payment = await self._start_payment(reservation)

        try:
            result = await self.payment_gateway.charge(reservation.id, payment.amount, payment.currency)
        except Exception as e:
            logger.error("payment_gateway_error", reservation_id=str(reservation.id), error=str(e))
            result = ChargeResult(success=False, failure_reason=f"Payment gateway error: {e}")

        try:
            return await self.record_payment_result(
                reservation.id, result.success, result.transaction_id, result.failure_reason
            )
        except (IllegalTransitionError, StorageConflictError):
            if result.success:
                # The charge went through but is not attached to a confirmed reservation
                logger.warning("payment_not_recorded", reservation_id=str(reservation.id),
                               transaction_id=result.transaction_id)
                await self._return_charge(payment, reservation, result.transaction_id)
            raise

    async def record_payment_result(
        self,
        reservation_id: UUID,
        success: bool,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None
    ) -> Reservation:
        """Apply a payment outcome (gateway callback path); system actor only"""

        async def save_outcome(tx: StoreTransaction, reservation: Reservation, now: datetime) -> None:
            payment = await tx.get_payment(reservation.id) or self._new_payment(reservation, now)
            if success:
                payment = payment.model_copy(update={
                    "status": PaymentStatus.COMPLETED,
                    "transaction_id": transaction_id,
                    "paid_at": now,
                    "failure_reason": None,
                })
            else:
                payment = payment.model_copy(update={
                    "status": PaymentStatus.FAILED,
                    "transaction_id": transaction_id,
                    "failure_reason": failure_reason,
                })
            await tx.save_payment(payment)

        event = LifecycleEvent.PAYMENT_SUCCEEDED if success else LifecycleEvent.PAYMENT_FAILED
        extra = {"transaction_id": transaction_id} if success else {"failure_reason": failure_reason}
        reservation = await self._apply_event(
            reservation_id, event, None, in_transaction=save_outcome, notify_extra=extra
        )
        if not success:
            raise PaymentFailedError(reservation.id, failure_reason)
        return reservation

    async def _start_payment(self, reservation: Reservation) -> Payment:
        """Record a pending payment so a second concurrent charge is refused"""

        async def attempt() -> Payment:
            now = self.now()
            async with self.store.transaction(reservation.space_id) as tx:
                current = await tx.get_reservation(reservation.id)
                if current.status != ReservationStatus.AWAITING_PAYMENT:
                    raise IllegalTransitionError(
                        f"Reservation {current.reference_code} is {current.status.value}, not awaiting payment",
                        current.status.value,
                        LifecycleEvent.PAYMENT_SUCCEEDED.value
                    )
                existing = await tx.get_payment(current.id)
                if existing is not None and existing.status == PaymentStatus.PENDING:
                    raise IllegalTransitionError(
                        f"Payment for reservation {current.reference_code} is already in progress",
                        current.status.value,
                        LifecycleEvent.PAYMENT_SUCCEEDED.value
                    )
                payment = self._new_payment(current, now)
                if existing is not None:
                    payment = payment.model_copy(update={"id": existing.id})
                return await tx.save_payment(payment)

        return await self._with_retry("start_payment", attempt)

    def _new_payment(self, reservation: Reservation, now: datetime) -> Payment:
        return Payment(
            id=uuid.uuid4(),
            reservation_id=reservation.id,
            amount=reservation.total_amount,
            currency=self.settings.currency,
            status=PaymentStatus.PENDING,
            created_at=now,
        )

    async def _refund(self, reservation: Reservation, party: Party) -> None:
        """Refund after a Confirmed reservation was cancelled (already committed)"""
        payment = await self.store.get_payment(reservation.id)
        if payment is None or payment.status != PaymentStatus.COMPLETED:
            logger.warning("refund_skipped_no_payment", reservation_id=str(reservation.id))
            return

        if party == Party.OWNER:
            amount = payment.amount
        else:
            amount = self.refund_policy.refund_amount(
                payment.amount, reservation.start_time, reservation.cancelled_at or self.now()
            )

        if amount <= 0:
            logger.info("refund_not_due", reservation_id=str(reservation.id))
            return

        await self._refund_payment(payment, reservation, amount, payment.transaction_id)

    async def _return_charge(self, payment: Payment, reservation: Reservation, transaction_id: Optional[str]) -> None:
        """Refund a successful charge that never made it onto the reservation"""
        latest = await self.store.get_payment(reservation.id) or payment
        if latest.status == PaymentStatus.COMPLETED and latest.transaction_id == transaction_id:
            return
        if await self._refund_payment(latest, reservation, payment.amount, transaction_id):
            return

        # Keep the transaction id on the pending payment so expiry can refund it later
        charged = latest.model_copy(update={"transaction_id": transaction_id})

        async def save() -> None:
            async with self.store.transaction(reservation.space_id) as tx:
                await tx.save_payment(charged)

        try:
            await self._with_retry("save_unrecorded_charge", save)
        except StorageConflictError:
            logger.error(
                "unrecorded_charge_needs_reconciliation",
                reservation_id=str(reservation.id),
                payment_id=str(payment.id),
                transaction_id=transaction_id,
                amount=str(payment.amount),
            )

    async def _refund_unrecorded_charge(self, reservation: Reservation) -> None:
        """After leaving AwaitingPayment: a pending payment with a transaction id was charged, so refund it"""
        payment = await self.store.get_payment(reservation.id)
        if payment is None or payment.status != PaymentStatus.PENDING or not payment.transaction_id:
            return
        logger.warning("refunding_unrecorded_charge", reservation_id=str(reservation.id),
                       transaction_id=payment.transaction_id)
        await self._refund_payment(payment, reservation, payment.amount, payment.transaction_id)

    async def _refund_payment(
        self,
        payment: Payment,
        reservation: Reservation,
        amount,
        transaction_id: Optional[str]
    ) -> bool:
        try:
            result = await self.payment_gateway.refund(payment.id, transaction_id, amount)
        except Exception as e:
            result = RefundResult(success=False, failure_reason=f"Payment gateway error: {e}")

        if not result.success:
            track_refund_failure()
            logger.error(
                "refund_failed",
                reservation_id=str(reservation.id),
                payment_id=str(payment.id),
                amount=str(amount),
                reason=result.failure_reason,
            )
            return False

        now = self.now()
        refunded = payment.model_copy(update={
            "status": PaymentStatus.REFUNDED if amount >= payment.amount else PaymentStatus.PARTIALLY_REFUNDED,
            "transaction_id": payment.transaction_id or transaction_id,
            "refund_amount": amount,
            "refund_transaction_id": result.refund_transaction_id,
            "refunded_at": now,
        })

        async def save() -> None:
            async with self.store.transaction(reservation.space_id) as tx:
                await tx.save_payment(refunded)

        try:
            await self._with_retry("save_refund", save)
        except StorageConflictError:
            # Money already went back; only the record is missing
            logger.error(
                "refund_not_recorded",
                reservation_id=str(reservation.id),
                payment_id=str(payment.id),
                refund_transaction_id=result.refund_transaction_id,
                amount=str(amount),
            )
        else:
            logger.info("refund_processed", reservation_id=str(reservation.id), amount=str(amount))
        await self._notify(
            reservation.requester_id,
            NotificationType.REFUND_PROCESSED,
            reservation,
            refund_amount=str(amount)
        )
        return True

    # ============================================================
    # Queries
    # ============================================================

    async def get_reservation(
        self,
        reservation_ref: Union[UUID, str],
        actor_id: Optional[UUID] = None
    ) -> Reservation:
        """
        Look up by id or by reference code (PKG-...)

        Visible to the requester and the space owner; actor_id None is a
        trusted internal caller.
        """
        reservation = None
        reservation_id = _as_uuid(reservation_ref)
        if reservation_id is not None:
            reservation = await self.store.get_reservation(reservation_id)
        else:
            reservation = await self.store.get_reservation_by_reference(str(reservation_ref))

        if reservation is None:
            raise NotFoundError("Reservation", reservation_ref)
        if actor_id is not None and not reservation.involves(actor_id):
            raise ForbiddenError("Reservation belongs to another user", actor_id=actor_id)
        return reservation

    async def list_reservations(
        self,
        actor_id: UUID,
        as_owner: bool = False,
        filters: Optional[ReservationFilter] = None
    ) -> ReservationPage:
        """Reservations the actor made, or (as_owner) those made on the actor's spaces"""
        filters = filters or ReservationFilter()
        if as_owner:
            return await self.store.list_reservations(filters, space_owner_id=actor_id)
        return await self.store.list_reservations(filters, requester_id=actor_id)

    async def get_history(self, reservation_id: UUID, actor_id: Optional[UUID] = None) -> List[StatusChange]:
        reservation = await self.get_reservation(reservation_id, actor_id)
        return await self.store.get_history(reservation.id)

    async def get_payment(self, reservation_id: UUID, actor_id: Optional[UUID] = None) -> Optional[Payment]:
        reservation = await self.get_reservation(reservation_id, actor_id)
        return await self.store.get_payment(reservation.id)

    # ============================================================
    # Helpers
    # ============================================================

    def _validate_window(
        self,
        start_time: datetime,
        end_time: datetime,
        now: Optional[datetime] = None,
        require_future: bool = True
    ) -> Tuple[datetime, datetime]:
        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)
        if end_time <= start_time:
            raise InvalidWindowError("End time must be after start time", start_time, end_time)
        if require_future and start_time <= (now or self.now()):
            raise InvalidWindowError("Start time must be in the future", start_time, end_time)
        return start_time, end_time

    async def _get_bookable_space(self, space_id: UUID, pricing_mode: PricingMode) -> SpaceInfo:
        space = await self.spaces.get_space(space_id)
        if space is None:
            raise NotFoundError("Space", space_id)
        if not space.is_active:
            raise SpaceUnavailableError(space_id, "Space is not active")
        if not space.rates.offers(pricing_mode):
            raise SpaceUnavailableError(
                space_id, f"Space does not offer {PricingMode(pricing_mode).value} pricing"
            )
        return space

    async def _load(self, reservation_id: UUID) -> Reservation:
        reservation = await self.store.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    async def _with_retry(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run func, retrying StorageConflictError up to storage_retry_attempts in total"""
        attempts = self.settings.storage_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except StorageConflictError as e:
                track_storage_conflict(operation)
                if attempt >= attempts:
                    logger.error("storage_conflict_exhausted", operation=operation, attempts=attempts)
                    raise
                logger.warning("storage_conflict_retry", operation=operation, attempt=attempt, error=e.message)
                await asyncio.sleep(0.01 * attempt)

    async def _notify(
        self,
        user_id: UUID,
        notification_type: NotificationType,
        reservation: Reservation,
        **extra
    ) -> None:
        """Best-effort notification; failures are logged and counted, never raised"""
        payload = {
            "reservation_id": str(reservation.id),
            "reference_code": reservation.reference_code,
            "space_id": str(reservation.space_id),
            "status": reservation.status.value,
            "start_time": reservation.start_time.isoformat(),
            "end_time": reservation.end_time.isoformat(),
            "total_amount": str(reservation.total_amount),
            **extra,
        }
        try:
            await self.notifier.notify(user_id, notification_type.value, payload)
        except Exception as e:
            track_notification_failure(notification_type.value)
            logger.warning(
                "notification_failed",
                type=notification_type.value,
                user_id=str(user_id),
                reservation_id=str(reservation.id),
                error=str(e),
            )


def _as_uuid(value: Union[UUID, str]) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None
