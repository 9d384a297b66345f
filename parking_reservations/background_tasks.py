"""
Background expiry job

Periodically finds Pending reservations nobody approved in time and
AwaitingPayment reservations nobody paid in time, and expires them
through the engine's ordinary transition path.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Optional

from .config import Settings, get_settings
from .exceptions import IllegalTransitionError, ReservationError
from .logging_config import get_logger
from .metrics import track_expired

logger = get_logger(__name__)


class ReservationExpiryJob:
    """
    Polling expiry scanner

    No locking of its own: engine.expire() is a compare-and-set, so a
    reservation approved or paid between scan and expire simply fails
    with IllegalTransitionError and is skipped.
    """

    def __init__(self, engine, settings: Optional[Settings] = None):
        self.engine = engine
        self.store = engine.store
        self.settings = settings or engine.settings or get_settings()
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the periodic scan"""
        if self.running:
            return

        self.running = True
        self._task = asyncio.create_task(self._expiry_loop())
        logger.info("expiry_job_started", interval_seconds=self.settings.expiry_scan_interval_seconds)

    async def stop(self):
        """Stop the periodic scan and wait for it to finish"""
        if not self.running:
            return

        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("expiry_job_stopped")

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Expire everything currently overdue; returns how many were expired"""
        now = now or self.engine.now()
        due = await self.store.find_expirable(
            pending_created_before=now - timedelta(minutes=self.settings.pending_approval_timeout_minutes),
            payment_changed_before=now - timedelta(minutes=self.settings.payment_timeout_minutes),
            now=now,
            limit=self.settings.expiry_scan_batch_size,
        )

        expired = 0
        for reservation in due:
            try:
                await self.engine.expire(reservation.id)
                expired += 1
            except IllegalTransitionError:
                logger.debug("expiry_skipped", reservation_id=str(reservation.id))
            except ReservationError as e:
                logger.error("expiry_failed", reservation_id=str(reservation.id), error=e.message)

        if expired:
            track_expired(expired)
        logger.info("expiry_scan_completed", candidates=len(due), expired=expired)
        return expired

    async def _expiry_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.settings.expiry_scan_interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("expiry_loop_error", error=str(e), exc_info=True)
