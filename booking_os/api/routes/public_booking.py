"""Unauthenticated booking endpoints for a business's public page.

All routes are rate limited per client IP.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from booking_os.api.dependencies import get_orchestrator, get_scheduler
from booking_os.api.rate_limit import SlidingWindowRateLimiter
from booking_os.config import get_settings
from booking_os.scheduling.models import Appointment, TimeSlot
from booking_os.scheduling.public_booking import (
    PublicBookingOrchestrator,
    PublicBookingRequest,
    PublicBookingResponse,
    PublicCancellation,
)
from booking_os.scheduling.scheduler import SchedulingService

limiter = SlidingWindowRateLimiter(max_requests=get_settings().public_rate_limit, window_seconds=60)

router = APIRouter(prefix="/public", dependencies=[Depends(limiter)])


class VerifyBookingRequest(BaseModel):
    phone: str = Field(min_length=6, max_length=20)
    code: str = Field(min_length=1, max_length=10)


class PublicCancelRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/appointments/{code}", response_model=Appointment)
async def get_appointment_by_code(
    code: str,
    orchestrator: PublicBookingOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_by_confirmation_code(code)


@router.post("/appointments/{code}/cancel", response_model=PublicCancellation)
async def cancel_appointment_by_code(
    code: str,
    body: Optional[PublicCancelRequest] = None,
    orchestrator: PublicBookingOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.cancel_by_confirmation_code(code, reason=body.reason if body else None)


@router.get("/businesses/{slug}/slots", response_model=list[TimeSlot])
async def get_public_slots(
    slug: str,
    day: date = Query(alias="date"),
    staff_id: Optional[str] = None,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.get_available_slots_by_slug(slug, day, staff_id)


@router.post("/businesses/{slug}/bookings", response_model=PublicBookingResponse)
async def request_booking(
    slug: str,
    body: PublicBookingRequest,
    orchestrator: PublicBookingOrchestrator = Depends(get_orchestrator),
):
    """Phase 1: validate and either book (verified payment) or send a passcode."""
    return await orchestrator.request_booking(slug, body)


@router.post("/businesses/{slug}/bookings/verify", response_model=Appointment, status_code=201)
async def verify_booking(
    slug: str,
    body: VerifyBookingRequest,
    orchestrator: PublicBookingOrchestrator = Depends(get_orchestrator),
):
    """Phase 2: redeem the passcode and create the parked booking."""
    return await orchestrator.verify_booking(slug, body.phone, body.code)
