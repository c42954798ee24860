"""Exception taxonomy for the booking engine."""

from typing import Optional


class BookingError(Exception):
    """Base exception for booking errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    """One or more business-policy violations.

    All violations found in a single validation pass are carried together
    so callers can show every problem at once.
    """

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Validation failed")


class ConflictError(BookingError):
    """The requested interval overlaps an existing booking in the same scope."""

    def __init__(self, message: str = "Selected time slot is not available", conflicting_ids: Optional[list[str]] = None):
        super().__init__(message)
        self.conflicting_ids = conflicting_ids or []


class StateError(BookingError):
    """The transition is not allowed from the appointment's current status."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(BookingError):
    """A referenced entity or passcode does not exist (or has expired)."""

    pass


class AuthorizationError(BookingError):
    """The acting principal may not perform this operation."""

    pass


class ExternalDependencyError(BookingError):
    """A collaborator (payment provider, passcode gateway) failed."""

    def __init__(self, message: str, dependency: Optional[str] = None):
        super().__init__(message)
        self.dependency = dependency
