"""HTTP API for the booking engine."""

from booking_os.api.app import create_app

__all__ = ["create_app"]
