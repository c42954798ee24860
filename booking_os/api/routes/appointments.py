"""Internal appointment endpoints used by staff-facing clients."""

from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from booking_os.api.dependencies import get_actor, get_machine, get_scheduler
from booking_os.scheduling.models import (
    Actor,
    Appointment,
    AppointmentFilter,
    AppointmentPage,
    AppointmentStats,
    AppointmentStatus,
    TimeSlot,
)
from booking_os.scheduling.scheduler import SchedulingService
from booking_os.scheduling.state_machine import BookingStateMachine, CreateAppointmentRequest

router = APIRouter()


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class CompleteRequest(BaseModel):
    loyalty_points: int = Field(default=0, ge=0)


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1)
    fee: float = Field(default=0.0, ge=0)


class RescheduleRequest(BaseModel):
    date: date
    start_time: time
    end_time: time
    reason: Optional[str] = None


class ReviewRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    text: Optional[str] = None


# ---------------------------------------------------------------------------
# Slots
# ---------------------------------------------------------------------------

@router.get("/businesses/{business_id}/slots", response_model=list[TimeSlot])
async def get_available_slots(
    business_id: str,
    day: date = Query(alias="date"),
    staff_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    scheduler: SchedulingService = Depends(get_scheduler),
):
    """Slots for one day, each flagged available or taken."""
    BookingStateMachine.authorize(actor, business_id)
    return await scheduler.get_available_slots(business_id, day, staff_id)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@router.get("/businesses/{business_id}/appointments", response_model=AppointmentPage)
async def search_appointments(
    business_id: str,
    status: Optional[AppointmentStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    customer_id: Optional[str] = None,
    staff_id: Optional[str] = None,
    service_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    """Filtered, paginated appointment listing, newest bookings first."""
    filters = AppointmentFilter(
        status=status,
        start_date=start_date,
        end_date=end_date,
        customer_id=customer_id,
        staff_id=staff_id,
        service_id=service_id,
        search=search,
        page=page,
        limit=limit,
    )
    return await machine.list_appointments(actor, business_id, filters)


@router.get("/businesses/{business_id}/appointments/stats", response_model=AppointmentStats)
async def appointment_stats(
    business_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.appointment_stats(actor, business_id, start_date, end_date)


@router.post("/appointments", response_model=Appointment, status_code=201)
async def create_appointment(
    body: CreateAppointmentRequest,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.create(actor, body)


@router.get("/appointments", response_model=list[Appointment])
async def list_appointments(
    business_id: str,
    day: date = Query(alias="date"),
    staff_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.list_for_day(actor, business_id, day, staff_id)


@router.get("/appointments/{appointment_id}", response_model=Appointment)
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.get(actor, appointment_id)


@router.post("/appointments/{appointment_id}/confirm", response_model=Appointment)
async def confirm_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.confirm(actor, appointment_id)


@router.post("/appointments/{appointment_id}/start", response_model=Appointment)
async def start_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.start(actor, appointment_id)


@router.post("/appointments/{appointment_id}/complete", response_model=Appointment)
async def complete_appointment(
    appointment_id: str,
    body: Optional[CompleteRequest] = None,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    loyalty_points = body.loyalty_points if body else 0
    return await machine.complete(actor, appointment_id, loyalty_points=loyalty_points)


@router.post("/appointments/{appointment_id}/cancel", response_model=Appointment)
async def cancel_appointment(
    appointment_id: str,
    body: CancelRequest,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.cancel(actor, appointment_id, reason=body.reason, fee=body.fee)


@router.post("/appointments/{appointment_id}/reschedule", response_model=Appointment)
async def reschedule_appointment(
    appointment_id: str,
    body: RescheduleRequest,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.reschedule(
        actor, appointment_id, body.date, body.start_time, body.end_time, reason=body.reason
    )


@router.post("/appointments/{appointment_id}/no-show", response_model=Appointment)
async def mark_no_show(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.mark_no_show(actor, appointment_id)


@router.post("/appointments/{appointment_id}/review", response_model=Appointment)
async def add_review(
    appointment_id: str,
    body: ReviewRequest,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    return await machine.add_review(actor, appointment_id, rating=body.rating, text=body.text)
