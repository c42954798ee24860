"""Pydantic models for the booking engine.

Domain values are immutable; lifecycle changes produce new instances via
``model_copy(update=...)``.
"""

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class AppointmentStatus(str, Enum):
    """Appointment lifecycle statuses."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    ONLINE = "online"


class BookingSource(str, Enum):
    """Channel an appointment was booked through."""

    WALK_IN = "walk-in"
    ONLINE = "online"
    PHONE = "phone"
    WHATSAPP = "whatsapp"
    SOCIAL_MEDIA = "social_media"
    MOBILE_APP = "mobile_app"


class ActorRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    CUSTOMER = "customer"
    SYSTEM = "system"


class Actor(BaseModel):
    """The authenticated principal performing an operation."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: ActorRole
    business_id: Optional[str] = Field(
        default=None, description="Business the actor is bound to; None means unrestricted"
    )

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", role=ActorRole.SYSTEM)

    @property
    def is_internal(self) -> bool:
        """Staff-side actors allowed to drive the lifecycle directly."""
        return self.role != ActorRole.CUSTOMER

    def can_access(self, business_id: str) -> bool:
        return self.business_id is None or self.business_id == business_id


# ----------------------------------------------------------------------
# Business configuration (read-only input)
# ----------------------------------------------------------------------


class DayHours(BaseModel):
    model_config = ConfigDict(frozen=True)

    open_time: time
    close_time: time


class WorkingHours(BaseModel):
    """Opening hours with optional per-weekday overrides.

    Weekdays are 0 (Monday) to 6 (Sunday); names such as ``"monday"`` are
    accepted on input.
    """

    model_config = ConfigDict(frozen=True)

    open_time: time = time(9, 0)
    close_time: time = time(21, 0)
    working_days: list[int] = Field(default_factory=lambda: list(range(7)))
    per_day: dict[int, DayHours] = Field(default_factory=dict)

    @field_validator("working_days", mode="before")
    @classmethod
    def _normalize_days(cls, value: Any) -> Any:
        if not value:
            return list(range(7))
        return [_weekday_index(v) for v in value]

    @field_validator("per_day", mode="before")
    @classmethod
    def _normalize_per_day(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {_weekday_index(k): v for k, v in value.items()}
        return value

    def hours_for(self, day: date) -> Optional[tuple[time, time]]:
        """Open/close times for ``day``, or None when the business is closed."""
        weekday = day.weekday()
        if weekday not in self.working_days:
            return None
        override = self.per_day.get(weekday)
        if override:
            return override.open_time, override.close_time
        return self.open_time, self.close_time


def _weekday_index(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if text.isdigit():
        return int(text)
    if text not in _WEEKDAY_NAMES:
        raise ValueError(f"Unknown weekday: {value!r}")
    return _WEEKDAY_NAMES.index(text)


class CancellationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    allow_cancellation: bool = True
    min_cancellation_hours: float = Field(default=10, ge=0)
    refund_percentage: float = Field(default=100, ge=0, le=100)


class BusinessPolicy(BaseModel):
    """Scheduling policy of a single business."""

    model_config = ConfigDict(frozen=True)

    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    slot_duration: int = 30
    buffer_time: int = Field(default=15, ge=0)
    min_advance_booking_hours: float = Field(default=1, ge=0)
    max_advance_booking_hours: float = Field(default=960, ge=0)
    allow_online_booking: bool = True
    cancellation_policy: CancellationPolicy = Field(default_factory=CancellationPolicy)
    timezone: str = "Asia/Kolkata"
    currency: str = "INR"

    @property
    def effective_slot_duration(self) -> int:
        """Slot step in minutes; anything under 5 falls back to 30."""
        if not self.slot_duration or self.slot_duration < 5:
            return 30
        return self.slot_duration


class Business(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    slug: str
    policy: BusinessPolicy = Field(default_factory=BusinessPolicy)


class PricingTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: Optional[str] = None
    price: float = Field(ge=0)
    duration: int = Field(gt=0)
    active: bool = True


class Service(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    business_id: str
    name: str
    price: Optional[float] = None
    duration: Optional[int] = None
    pricing_options: list[PricingTier] = Field(default_factory=list)
    category: Optional[str] = None
    is_active: bool = True


class PriceQuote(BaseModel):
    """Resolved (price, duration) for a booking."""

    model_config = ConfigDict(frozen=True)

    price: float
    duration: int


class PriceBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_price: float
    tax: float
    discount: float
    total_amount: float


class TimeSlot(BaseModel):
    """A single bookable window on a given day."""

    model_config = ConfigDict(frozen=True)

    start_time: time
    end_time: time
    duration: int
    available: bool = True


# ----------------------------------------------------------------------
# Appointment and its sub-records
# ----------------------------------------------------------------------


class CancellationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: str
    cancelled_by: str
    cancelled_by_role: ActorRole
    fee: float = 0.0
    cancelled_at: datetime = Field(default_factory=_utcnow)


class RescheduleEntry(BaseModel):
    """The slot an appointment occupied before a reschedule."""

    model_config = ConfigDict(frozen=True)

    date: date
    start_time: time
    end_time: time
    reason: Optional[str] = None
    rescheduled_by: str
    rescheduled_at: datetime = Field(default_factory=_utcnow)


class Review(BaseModel):
    model_config = ConfigDict(frozen=True)

    rating: int = Field(ge=1, le=5)
    text: Optional[str] = None
    reviewed_at: datetime = Field(default_factory=_utcnow)


class Appointment(BaseModel):
    """A booked appointment."""

    model_config = ConfigDict(frozen=True)

    id: str
    confirmation_code: str
    business_id: str
    customer_id: str
    service_id: str
    staff_id: Optional[str] = None

    date: date
    start_time: time
    end_time: time
    duration: int

    service_price: float
    tax: float = 0.0
    discount: float = 0.0
    total_amount: float
    paid_amount: float = 0.0
    advance_amount: float = 0.0
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_reference: Optional[str] = None

    status: AppointmentStatus = AppointmentStatus.PENDING
    booking_source: BookingSource = BookingSource.WALK_IN
    notes: Optional[str] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration: Optional[int] = None
    cancellation: Optional[CancellationRecord] = None
    reschedule_history: list[RescheduleEntry] = Field(default_factory=list)
    review: Optional[Review] = None
    loyalty_points_earned: int = 0

    created_by: str
    updated_by: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_amounts(self) -> "Appointment":
        if self.paid_amount > self.total_amount + 1e-9:
            raise ValueError("paid_amount cannot exceed total_amount")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def scope(self) -> tuple[str, Optional[str]]:
        """Conflict scope: (business, staff or None)."""
        return self.business_id, self.staff_id

    def starts_at(self, tz) -> datetime:
        """Start of the appointment as an aware datetime in ``tz``."""
        return datetime.combine(self.date, self.start_time, tzinfo=tz)


class Customer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    business_id: str
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    total_visits: int = 0
    total_spent: float = 0.0
    average_spent: float = 0.0
    customer_type: str = "new"
    loyalty_points: int = 0
    first_visit: Optional[datetime] = None
    last_visit: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class AppointmentFilter(BaseModel):
    """Back-office query over a business's appointments.

    ``search`` matches the confirmation code or the customer's name, phone
    or email, case-insensitively.
    """

    status: Optional[AppointmentStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    customer_id: Optional[str] = None
    staff_id: Optional[str] = None
    service_id: Optional[str] = None
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class AppointmentPage(BaseModel):
    items: list[Appointment]
    total: int
    page: int
    limit: int
    pages: int


class AppointmentStats(BaseModel):
    """Counts per status and revenue over a date range."""

    total_appointments: int = 0
    by_status: dict[AppointmentStatus, int] = Field(default_factory=dict)
    paid_revenue: float = 0.0
    pending_revenue: float = 0.0
    total_revenue: float = 0.0
    total_paid: float = 0.0
    average_value: float = 0.0
