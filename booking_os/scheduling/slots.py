"""Time slot generation for a business day."""

import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, time, timezone
from typing import Optional

from booking_os.scheduling.availability import AvailabilityChecker
from booking_os.scheduling.models import Appointment, BusinessPolicy, TimeSlot
from booking_os.scheduling.timeutils import (
    combine,
    get_zone,
    hours_until,
    local_now,
    minutes_to_time,
    to_minutes,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeSlotGenerator:
    """Produces the bookable slots of one day, marking each as available or not."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow

    def generate(
        self,
        policy: BusinessPolicy,
        day: date,
        existing: Iterable[Appointment] = (),
        staff_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[TimeSlot]:
        """Generate all in-range slots for ``day``.

        Args:
            policy: Business scheduling policy
            day: Calendar day in the business timezone
            existing: Appointments already booked on ``day`` for the business
            staff_id: Scope to check availability against (None = unassigned)
            now: Override for the current instant (aware)

        Returns:
            Slots in chronological order; closed days yield an empty list.
        """
        hours = policy.working_hours.hours_for(day)
        if hours is None:
            return []

        open_minutes, close_minutes = to_minutes(hours[0]), to_minutes(hours[1])
        if open_minutes >= close_minutes:
            logger.warning(f"Opening hours for {day} are empty ({hours[0]}-{hours[1]})")
            return []

        step = policy.effective_slot_duration
        tz = get_zone(policy.timezone)
        now = now or self._clock()
        today = local_now(now, tz).date()
        if day < today:
            return []

        # Same lead-time test the validator applies, down to the second.
        def bookable(start: time) -> bool:
            return day > today or hours_until(combine(day, start, tz), now) >= policy.min_advance_booking_hours

        checker = AvailabilityChecker(policy.buffer_time)
        booked = list(existing)
        slots: list[TimeSlot] = []
        current = open_minutes
        while current + step <= close_minutes:
            start, end = minutes_to_time(current), minutes_to_time(current + step)
            if bookable(start):
                slots.append(
                    TimeSlot(
                        start_time=start,
                        end_time=end,
                        duration=step,
                        available=checker.is_available(start, end, booked, staff_id=staff_id),
                    )
                )
            current += step
        return slots
