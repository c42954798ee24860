"""Booking store: ORM models, sessions, repositories and scope locks."""
