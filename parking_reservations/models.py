"""
Pydantic models for the reservation engine
All domain types in one place for simplicity
"""
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID
import math

# ============================================================
# Enums
# ============================================================

class ReservationStatus(str, Enum):
    """Reservation lifecycle states"""
    PENDING = "pending"                    # Waiting for owner approval
    AWAITING_PAYMENT = "awaiting_payment"  # Approved, waiting for payment
    CONFIRMED = "confirmed"                # Paid, spot held
    IN_PROGRESS = "in_progress"            # Checked in
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

# Statuses that block overlapping windows on the same space
ACTIVE_STATUSES = frozenset({
    ReservationStatus.PENDING,
    ReservationStatus.AWAITING_PAYMENT,
    ReservationStatus.CONFIRMED,
    ReservationStatus.IN_PROGRESS,
})

TERMINAL_STATUSES = frozenset({
    ReservationStatus.COMPLETED,
    ReservationStatus.CANCELLED,
    ReservationStatus.EXPIRED,
    ReservationStatus.REJECTED,
})

class LifecycleEvent(str, Enum):
    """Events that drive reservation transitions"""
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    EXPIRE = "expire"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"

class PricingMode(str, Enum):
    """Billing unit selected for a reservation"""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

class VehicleType(str, Enum):
    CAR = "car"
    MOTORCYCLE = "motorcycle"
    SUV = "suv"
    TRUCK = "truck"
    VAN = "van"
    ELECTRIC = "electric"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

# ============================================================
# Space Models
# ============================================================

class RateSchedule(BaseModel):
    """Per-mode rates for a space; a zero rate means the mode is not offered"""
    hourly_rate: Decimal = Field(default=Decimal("0"), ge=0)
    daily_rate: Decimal = Field(default=Decimal("0"), ge=0)
    weekly_rate: Decimal = Field(default=Decimal("0"), ge=0)
    monthly_rate: Decimal = Field(default=Decimal("0"), ge=0)

    def rate_for(self, mode: PricingMode) -> Decimal:
        return getattr(self, f"{PricingMode(mode).value}_rate")

    def offers(self, mode: PricingMode) -> bool:
        return self.rate_for(mode) > 0

class SpaceInfo(BaseModel):
    """Space as seen through the space directory"""
    id: UUID
    owner_id: UUID
    rates: RateSchedule = Field(default_factory=RateSchedule)
    is_active: bool = True
    total_spots: int = Field(default=1, ge=0)
    available_spots: int = Field(default=1, ge=0)
    auto_approve: bool = Field(default=False, description="New reservations skip owner approval")

    @model_validator(mode="after")
    def validate_spots(self):
        if self.available_spots > self.total_spots:
            raise ValueError("available_spots cannot exceed total_spots")
        return self

# ============================================================
# Reservation Models
# ============================================================

class VehicleInfo(BaseModel):
    """Vehicle descriptor (informational only)"""
    vehicle_type: VehicleType = VehicleType.CAR
    plate: str = Field(..., min_length=1, max_length=20)
    model: Optional[str] = Field(None, max_length=100)

    @field_validator("plate")
    @classmethod
    def normalize_plate(cls, v: str) -> str:
        """Plates are stored trimmed and upper-case"""
        v = v.strip().upper()
        if not v:
            raise ValueError("Vehicle plate cannot be blank")
        return v

class PriceBreakdown(BaseModel):
    """Monetary breakdown for one window in one pricing mode"""
    pricing_mode: PricingMode
    duration_units: int = Field(..., ge=1)
    unit_rate: Decimal
    base_amount: Decimal = Field(..., ge=0)
    tax_amount: Decimal = Field(..., ge=0)
    service_fee: Decimal = Field(..., ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    total_amount: Decimal = Field(..., ge=0)
    discount_code: Optional[str] = None

class Reservation(BaseModel):
    """Complete reservation record"""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reference_code: str
    requester_id: UUID
    space_id: UUID
    space_owner_id: UUID
    start_time: datetime
    end_time: datetime
    pricing_mode: PricingMode
    duration_units: int
    vehicle: VehicleInfo

    base_amount: Decimal
    tax_amount: Decimal
    service_fee: Decimal
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal
    discount_code: Optional[str] = None

    status: ReservationStatus = ReservationStatus.PENDING
    created_at: datetime
    updated_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def involves(self, user_id: UUID) -> bool:
        """True if user is the requester or the space owner"""
        return user_id in (self.requester_id, self.space_owner_id)

class Payment(BaseModel):
    """Payment attached to a reservation (at most one)"""
    id: UUID
    reservation_id: UUID
    amount: Decimal
    currency: str = "INR"
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refund_transaction_id: Optional[str] = None
    refunded_at: Optional[datetime] = None

class StatusChange(BaseModel):
    """One row of a reservation's audit history"""
    reservation_id: UUID
    from_status: Optional[ReservationStatus] = None
    to_status: ReservationStatus
    event: Optional[LifecycleEvent] = None
    actor_id: Optional[UUID] = None
    reason: Optional[str] = None
    changed_at: datetime

# ============================================================
# Query Models
# ============================================================

class ReservationFilter(BaseModel):
    """Filters for reservation listings"""
    status: Optional[ReservationStatus] = None
    space_id: Optional[UUID] = None
    start_date: Optional[datetime] = Field(None, description="Only reservations ending on or after this time")
    end_date: Optional[datetime] = Field(None, description="Only reservations starting on or before this time")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

class ReservationPage(BaseModel):
    """Paginated reservation listing"""
    items: List[Reservation]
    total: int
    page: int
    page_size: int

    @computed_field
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0

class BookedWindow(BaseModel):
    """An occupied window on a space, without who holds it"""
    start_time: datetime
    end_time: datetime
    status: ReservationStatus

class AvailabilityResult(BaseModel):
    space_id: UUID
    start_time: datetime
    end_time: datetime
    available: bool
    conflicts: List[BookedWindow] = Field(default_factory=list)
