"""BookingOS: appointment scheduling and booking-state engine for service businesses."""

__version__ = "0.1.0"
