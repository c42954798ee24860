"""Command-line interface for BookingOS."""
