"""Pure appointment lifecycle transitions.

Each function takes the current immutable ``Appointment`` and returns the
next one, raising ``StateError`` when the move is not permitted. Nothing
here touches storage.

    pending -> confirmed -> in_progress -> completed
    pending | confirmed | in_progress -> cancelled
    pending | confirmed -> no_show
"""

from datetime import date, datetime, time, tzinfo
from typing import Optional

from booking_os.scheduling.errors import StateError, ValidationError
from booking_os.scheduling.models import (
    Actor,
    Appointment,
    AppointmentStatus,
    CancellationPolicy,
    CancellationRecord,
    RescheduleEntry,
    Review,
)
from booking_os.scheduling.timeutils import hours_until, to_minutes

S = AppointmentStatus

CONFIRMABLE = frozenset({S.PENDING})
STARTABLE = frozenset({S.PENDING, S.CONFIRMED})
COMPLETABLE = frozenset({S.PENDING, S.CONFIRMED, S.IN_PROGRESS})
CANCELLABLE = frozenset({S.PENDING, S.CONFIRMED, S.IN_PROGRESS})
NO_SHOW_ALLOWED = frozenset({S.PENDING, S.CONFIRMED})


def _require(appt: Appointment, allowed: frozenset, action: str) -> None:
    if appt.status not in allowed:
        raise StateError(
            f"Cannot {action} an appointment that is {appt.status.value}",
            status=appt.status.value,
        )


def confirm(appt: Appointment, actor: Actor, now: datetime) -> Appointment:
    _require(appt, CONFIRMABLE, "confirm")
    return appt.model_copy(update={"status": S.CONFIRMED, "updated_by": actor.id, "updated_at": now})


def start(appt: Appointment, actor: Actor, now: datetime) -> Appointment:
    """Check the customer in."""
    _require(appt, STARTABLE, "start")
    return appt.model_copy(
        update={
            "status": S.IN_PROGRESS,
            "checked_in_at": now,
            "updated_by": actor.id,
            "updated_at": now,
        }
    )


def complete(appt: Appointment, actor: Actor, now: datetime, loyalty_points: int = 0) -> Appointment:
    """Mark completed.

    Completing an already completed appointment is allowed and returns it
    with only the loyalty bookkeeping refreshed; the caller decides what
    side effects a repeat completion triggers.
    """
    if appt.status == S.COMPLETED:
        if loyalty_points > 0:
            return appt.model_copy(
                update={"loyalty_points_earned": loyalty_points, "updated_by": actor.id, "updated_at": now}
            )
        return appt
    _require(appt, COMPLETABLE, "complete")

    actual_duration: Optional[int] = None
    if appt.checked_in_at is not None:
        actual_duration = max(int((now - appt.checked_in_at).total_seconds() // 60), 0)

    update = {
        "status": S.COMPLETED,
        "completed_at": now,
        "actual_duration": actual_duration,
        "updated_by": actor.id,
        "updated_at": now,
    }
    if loyalty_points > 0:
        update["loyalty_points_earned"] = loyalty_points
    return appt.model_copy(update=update)


def cancel(appt: Appointment, actor: Actor, now: datetime, reason: str, fee: float = 0.0) -> Appointment:
    _require(appt, CANCELLABLE, "cancel")
    if fee < 0 or fee > appt.total_amount:
        raise ValidationError(f"Cancellation fee must be between 0 and {appt.total_amount:g}")
    record = CancellationRecord(
        reason=reason,
        cancelled_by=actor.id,
        cancelled_by_role=actor.role,
        fee=fee,
        cancelled_at=now,
    )
    return appt.model_copy(
        update={"status": S.CANCELLED, "cancellation": record, "updated_by": actor.id, "updated_at": now}
    )


def reschedule(
    appt: Appointment,
    actor: Actor,
    now: datetime,
    new_date: date,
    new_start: time,
    new_end: time,
    reason: Optional[str] = None,
) -> Appointment:
    """Move to a new slot, keeping the old one in the history.

    Status and amounts are unchanged. Availability is the caller's concern.
    """
    if appt.is_terminal:
        raise StateError(
            f"Cannot reschedule an appointment that is {appt.status.value}",
            status=appt.status.value,
        )
    entry = RescheduleEntry(
        date=appt.date,
        start_time=appt.start_time,
        end_time=appt.end_time,
        reason=reason,
        rescheduled_by=actor.id,
        rescheduled_at=now,
    )
    return appt.model_copy(
        update={
            "date": new_date,
            "start_time": new_start,
            "end_time": new_end,
            "duration": to_minutes(new_end) - to_minutes(new_start),
            "reschedule_history": [*appt.reschedule_history, entry],
            "updated_by": actor.id,
            "updated_at": now,
        }
    )


def mark_no_show(appt: Appointment, actor: Actor, now: datetime) -> Appointment:
    _require(appt, NO_SHOW_ALLOWED, "mark as no-show")
    return appt.model_copy(update={"status": S.NO_SHOW, "updated_by": actor.id, "updated_at": now})


def add_review(appt: Appointment, actor: Actor, now: datetime, rating: int, text: Optional[str] = None) -> Appointment:
    if appt.status != S.COMPLETED:
        raise StateError("Can only review completed appointments", status=appt.status.value)
    if appt.review is not None:
        raise StateError("Appointment has already been reviewed", status=appt.status.value)
    if not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    return appt.model_copy(
        update={"review": Review(rating=rating, text=text, reviewed_at=now), "updated_at": now}
    )


def cancellation_refund(appt: Appointment, policy: CancellationPolicy, now: datetime, tz: tzinfo) -> float:
    """Refund owed if the customer cancels now under ``policy``.

    Raises:
        StateError: The appointment is already closed.
        ValidationError: The policy forbids cancelling at this point.
    """
    if appt.status == S.COMPLETED:
        raise StateError("Cannot cancel a completed appointment", status=appt.status.value)
    if appt.status == S.CANCELLED:
        raise StateError("Appointment is already cancelled", status=appt.status.value)
    _require(appt, CANCELLABLE, "cancel")
    if not policy.allow_cancellation:
        raise ValidationError("Cancellation is not allowed for this business")
    if hours_until(appt.starts_at(tz), now) < policy.min_cancellation_hours:
        raise ValidationError(
            f"Cancellation must be done at least {policy.min_cancellation_hours:g} hours before appointment"
        )
    return round(appt.total_amount * policy.refund_percentage / 100, 2)
