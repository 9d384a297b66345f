"""
Payment gateway contract, development gateway and refund policy

The engine never calls a gateway while holding a store transaction.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID

from .pricing import money
from .utils import generate_transaction_id

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class RefundResult:
    success: bool
    refund_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentGateway(Protocol):
    """Opaque payment service"""

    async def charge(self, reservation_id: UUID, amount: Decimal, currency: str) -> ChargeResult:
        ...

    async def refund(self, payment_id: UUID, transaction_id: Optional[str], amount: Decimal) -> RefundResult:
        ...


class MockPaymentGateway:
    """
    Development gateway

    Approves every charge unless decline_charges is set; refunds always
    succeed unless fail_refunds is set. Calls are recorded for inspection.
    """

    def __init__(
        self,
        decline_charges: bool = False,
        fail_refunds: bool = False,
        latency_seconds: float = 0.0
    ):
        self.decline_charges = decline_charges
        self.fail_refunds = fail_refunds
        self.latency_seconds = latency_seconds
        self.charges = []
        self.refunds = []

    async def charge(self, reservation_id: UUID, amount: Decimal, currency: str) -> ChargeResult:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        self.charges.append((reservation_id, amount, currency))

        if self.decline_charges:
            logger.info(f"Mock gateway declined {amount} {currency} for reservation {reservation_id}")
            return ChargeResult(
                success=False,
                failure_reason="Payment declined by the bank. Please try again or use a different payment method."
            )
        return ChargeResult(success=True, transaction_id=generate_transaction_id("TXN"))

    async def refund(self, payment_id: UUID, transaction_id: Optional[str], amount: Decimal) -> RefundResult:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        self.refunds.append((payment_id, transaction_id, amount))

        if self.fail_refunds:
            return RefundResult(success=False, failure_reason="Refund rejected by gateway")
        return RefundResult(success=True, refund_transaction_id=generate_transaction_id("RFD"))

# ============================================================
# Refund Policy
# ============================================================

class RefundPolicy:
    """
    Refund share by how long before the window start a booking is cancelled

    More than full_hours: everything; more than partial_hours: partial_percent;
    otherwise nothing. Exactly on a boundary falls to the lower tier.
    """

    def __init__(self, full_hours: int = 24, partial_hours: int = 2, partial_percent: int = 50):
        if partial_hours > full_hours:
            raise ValueError("partial refund window cannot exceed the full refund window")
        self.full_notice = timedelta(hours=full_hours)
        self.partial_notice = timedelta(hours=partial_hours)
        self.partial_percent = Decimal(partial_percent)

    @classmethod
    def from_settings(cls, settings) -> "RefundPolicy":
        return cls(
            full_hours=settings.full_refund_hours_before_start,
            partial_hours=settings.partial_refund_hours_before_start,
            partial_percent=settings.partial_refund_percent,
        )

    def refund_amount(self, paid: Decimal, start_time: datetime, cancelled_at: datetime) -> Decimal:
        notice = start_time - cancelled_at
        if notice > self.full_notice:
            return money(paid)
        if notice > self.partial_notice:
            return money(paid * self.partial_percent / Decimal(100))
        return money(0)
