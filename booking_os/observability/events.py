"""Structured booking events for telemetry."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of booking events."""

    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_STARTED = "appointment_started"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_NO_SHOW = "appointment_no_show"
    APPOINTMENT_REVIEWED = "appointment_reviewed"
    BOOKING_CONFLICT = "booking_conflict"
    BOOKING_REJECTED = "booking_rejected"
    OTP_ISSUED = "otp_issued"
    OTP_FAILED = "otp_failed"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_MISMATCH = "payment_mismatch"
    OPERATION = "operation"


class BookingEvent(BaseModel):
    """A single telemetry record."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    business_id: Optional[str] = None
    appointment_id: Optional[str] = None
    actor_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Error fields
    error_type: Optional[str] = None
    error_message: Optional[str] = None
