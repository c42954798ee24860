"""Appointment scheduling and booking-state engine.

The names re-exported here are storage-free. The persistence-backed
services live in ``state_machine``, ``public_booking`` and ``scheduler``.
"""

from booking_os.scheduling.availability import AvailabilityChecker
from booking_os.scheduling.errors import (
    AuthorizationError,
    BookingError,
    ConflictError,
    ExternalDependencyError,
    NotFoundError,
    StateError,
    ValidationError,
)
from booking_os.scheduling.models import (
    Actor,
    ActorRole,
    Appointment,
    AppointmentStatus,
    BookingSource,
    BusinessPolicy,
    PaymentStatus,
    Service,
    TimeSlot,
)
from booking_os.scheduling.pricing import PricingResolver
from booking_os.scheduling.slots import TimeSlotGenerator
from booking_os.scheduling.validator import BookingCandidate, BookingValidator

__all__ = [
    "Actor",
    "ActorRole",
    "Appointment",
    "AppointmentStatus",
    "AuthorizationError",
    "AvailabilityChecker",
    "BookingCandidate",
    "BookingError",
    "BookingSource",
    "BookingValidator",
    "BusinessPolicy",
    "ConflictError",
    "ExternalDependencyError",
    "NotFoundError",
    "PaymentStatus",
    "PricingResolver",
    "Service",
    "StateError",
    "TimeSlot",
    "TimeSlotGenerator",
    "ValidationError",
]
