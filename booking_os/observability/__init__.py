"""Observability module for booking telemetry."""

from booking_os.observability.events import BookingEvent, EventType
from booking_os.observability.logger import BookingEventLogger, get_event_logger

__all__ = [
    "BookingEvent",
    "BookingEventLogger",
    "EventType",
    "get_event_logger",
]
