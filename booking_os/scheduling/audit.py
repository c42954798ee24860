"""Overlap audit over stored appointments.

Two bookings compete only when they share a staff id or both have none, so
a staff-less booking never blocks a staff-assigned one. Data written before
that rule, or under a looser one, may hold overlaps the engine would now
refuse; this audit lists them so they can be resolved by hand.
"""

from collections import defaultdict
from collections.abc import Iterable
from typing import Literal, Optional

from pydantic import BaseModel

from booking_os.scheduling.availability import intervals_conflict
from booking_os.scheduling.models import Appointment
from booking_os.scheduling.timeutils import to_minutes


class ScopeViolation(BaseModel):
    kind: Literal["double_booking", "mixed_scope"]
    business_id: str
    date: str
    first_id: str
    second_id: str
    staff_ids: tuple[Optional[str], Optional[str]]


def find_scope_violations(
    appointments: Iterable[Appointment], buffer_minutes: int = 0
) -> list[ScopeViolation]:
    """Pairs of active appointments on the same business day that overlap.

    ``double_booking`` pairs share a scope and break the no-overlap rule.
    ``mixed_scope`` pairs overlap between a staff-less and a staff-assigned
    booking, which is allowed but worth reviewing.
    """
    by_day: dict[tuple[str, str], list[Appointment]] = defaultdict(list)
    for appt in appointments:
        if not appt.is_terminal:
            by_day[(appt.business_id, appt.date.isoformat())].append(appt)

    violations: list[ScopeViolation] = []
    for (business_id, day), group in sorted(by_day.items()):
        group.sort(key=lambda a: (a.start_time, a.id))
        for i, first in enumerate(group):
            for second in group[i + 1:]:
                if first.staff_id is not None and second.staff_id is not None and first.staff_id != second.staff_id:
                    continue
                if not intervals_conflict(
                    to_minutes(second.start_time),
                    to_minutes(second.end_time),
                    to_minutes(first.start_time),
                    to_minutes(first.end_time),
                    buffer_minutes,
                ):
                    continue
                kind = "double_booking" if first.staff_id == second.staff_id else "mixed_scope"
                violations.append(
                    ScopeViolation(
                        kind=kind,
                        business_id=business_id,
                        date=day,
                        first_id=first.id,
                        second_id=second.id,
                        staff_ids=(first.staff_id, second.staff_id),
                    )
                )
    return violations
