"""FastAPI dependencies: engine services and the acting principal."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from booking_os.scheduling.models import Actor, ActorRole
from booking_os.scheduling.public_booking import PublicBookingOrchestrator
from booking_os.scheduling.scheduler import SchedulingService
from booking_os.scheduling.state_machine import BookingStateMachine
from booking_os.services import BookingServices


def get_services(request: Request) -> BookingServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Booking engine not initialised")
    return services


def get_machine(services: BookingServices = Depends(get_services)) -> BookingStateMachine:
    return services.machine


def get_scheduler(services: BookingServices = Depends(get_services)) -> SchedulingService:
    return services.scheduler


def get_orchestrator(services: BookingServices = Depends(get_services)) -> PublicBookingOrchestrator:
    return services.orchestrator


async def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
    x_business_id: Optional[str] = Header(default=None),
) -> Actor:
    """Principal asserted by the upstream auth layer.

    Headers: ``X-Actor-Id``, ``X-Actor-Role`` and optionally ``X-Business-Id``
    which restricts the actor to one business.
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing actor headers")
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown actor role: {x_actor_role}")
    return Actor(id=x_actor_id, role=role, business_id=x_business_id or None)
