"""Interval conflict detection within a booking scope."""

from collections.abc import Iterable
from datetime import time
from typing import Optional

from booking_os.scheduling.models import Appointment
from booking_os.scheduling.timeutils import to_minutes


def intervals_conflict(
    start: int,
    end: int,
    existing_start: int,
    existing_end: int,
    buffer: int = 0,
) -> bool:
    """Half-open overlap test with ``buffer`` minutes padded on the existing side."""
    return start < existing_end + buffer and end > existing_start - buffer


def same_scope(staff_id: Optional[str], other_staff_id: Optional[str]) -> bool:
    """Two bookings compete when they share a staff id or both have none.

    A staff-less booking and a staff-assigned booking never conflict.
    """
    return staff_id == other_staff_id


class AvailabilityChecker:
    """Decides whether a candidate interval collides with existing bookings."""

    def __init__(self, buffer_minutes: int = 0) -> None:
        self.buffer_minutes = buffer_minutes

    def find_conflicts(
        self,
        start: time,
        end: time,
        existing: Iterable[Appointment],
        staff_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> list[Appointment]:
        """Non-terminal bookings in the same scope that overlap ``[start, end)``."""
        cand_start, cand_end = to_minutes(start), to_minutes(end)
        conflicts: list[Appointment] = []
        for appt in existing:
            if appt.is_terminal:
                continue
            if exclude_id is not None and appt.id == exclude_id:
                continue
            if not same_scope(staff_id, appt.staff_id):
                continue
            if intervals_conflict(
                cand_start,
                cand_end,
                to_minutes(appt.start_time),
                to_minutes(appt.end_time),
                self.buffer_minutes,
            ):
                conflicts.append(appt)
        return conflicts

    def is_available(
        self,
        start: time,
        end: time,
        existing: Iterable[Appointment],
        staff_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> bool:
        return not self.find_conflicts(start, end, existing, staff_id, exclude_id)
