"""Business-policy and availability validation for booking requests."""

import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, time, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from booking_os.scheduling.availability import AvailabilityChecker
from booking_os.scheduling.errors import ConflictError, ValidationError
from booking_os.scheduling.models import Appointment, BookingSource, BusinessPolicy
from booking_os.scheduling.timeutils import combine, get_zone, hours_until, to_minutes

logger = logging.getLogger(__name__)

SLOT_TAKEN = "Selected time slot is not available"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fmt(value: float) -> str:
    return f"{value:g}"


def check_requested_span(start: time, end: Optional[time], duration: Optional[int]) -> None:
    """Reject a request whose explicit end time and duration disagree."""
    if end is None or duration is None:
        return
    span = to_minutes(end) - to_minutes(start)
    if span != duration:
        raise ValidationError(
            f"Requested duration of {duration} minutes does not match {start:%H:%M}-{end:%H:%M} ({span} minutes)"
        )


class BookingCandidate(BaseModel):
    """The interval a caller wants to book."""

    model_config = ConfigDict(frozen=True)

    date: date
    start_time: time
    end_time: time
    staff_id: Optional[str] = None
    source: BookingSource = BookingSource.WALK_IN


class ValidationResult(BaseModel):
    errors: list[str] = Field(default_factory=list)
    conflicts: list[Appointment] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.conflicts


class BookingValidator:
    """Checks a candidate booking against business policy and existing bookings.

    Every policy violation is collected in one pass. Policy violations take
    precedence: when any exist a ``ValidationError`` is raised carrying all of
    them (plus the slot message if the interval is also taken). A clean policy
    check with an overlapping booking raises ``ConflictError``.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow

    def check(
        self,
        policy: BusinessPolicy,
        candidate: BookingCandidate,
        existing: Iterable[Appointment] = (),
        exclude_id: Optional[str] = None,
        enforce_advance_window: bool = True,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        errors: list[str] = []
        tz = get_zone(policy.timezone)
        now = now or self._clock()

        if candidate.source == BookingSource.ONLINE and not policy.allow_online_booking:
            errors.append("Online booking is not available for this business")

        start_minutes = to_minutes(candidate.start_time)
        end_minutes = to_minutes(candidate.end_time)
        if end_minutes <= start_minutes:
            errors.append("End time must be after start time")

        if enforce_advance_window:
            lead_hours = hours_until(combine(candidate.date, candidate.start_time, tz), now)
            # Walk-ins are recorded as they happen.
            if candidate.source != BookingSource.WALK_IN and lead_hours < policy.min_advance_booking_hours:
                errors.append(
                    f"Appointment must be booked at least {_fmt(policy.min_advance_booking_hours)} hours in advance"
                )
            if lead_hours > policy.max_advance_booking_hours:
                errors.append(
                    "Appointment cannot be booked more than "
                    f"{_fmt(policy.max_advance_booking_hours / 24)} days in advance"
                )

        hours = policy.working_hours.hours_for(candidate.date)
        if hours is None:
            errors.append("Business is closed on the selected day")
        elif start_minutes < to_minutes(hours[0]) or end_minutes > to_minutes(hours[1]):
            errors.append("Appointment time must be within business working hours")

        conflicts: list[Appointment] = []
        if end_minutes > start_minutes:
            checker = AvailabilityChecker(policy.buffer_time)
            conflicts = checker.find_conflicts(
                candidate.start_time,
                candidate.end_time,
                existing,
                staff_id=candidate.staff_id,
                exclude_id=exclude_id,
            )
        return ValidationResult(errors=errors, conflicts=conflicts)

    def validate(
        self,
        policy: BusinessPolicy,
        candidate: BookingCandidate,
        existing: Iterable[Appointment] = (),
        exclude_id: Optional[str] = None,
        enforce_advance_window: bool = True,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise ``ValidationError`` or ``ConflictError`` if the booking is not allowed."""
        result = self.check(
            policy,
            candidate,
            existing,
            exclude_id=exclude_id,
            enforce_advance_window=enforce_advance_window,
            now=now,
        )
        if result.errors:
            errors = list(result.errors)
            if result.conflicts:
                errors.append(SLOT_TAKEN)
            raise ValidationError(errors)
        if result.conflicts:
            logger.info(
                f"Conflict for {candidate.date} {candidate.start_time}-{candidate.end_time} "
                f"(staff={candidate.staff_id}): {[a.id for a in result.conflicts]}"
            )
            raise ConflictError(SLOT_TAKEN, conflicting_ids=[a.id for a in result.conflicts])
