"""Wiring of the booking engine's collaborators."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_os.config import Settings, get_settings
from booking_os.core.database import get_session_factory
from booking_os.integrations.otp import OtpIssuer, OtpSender, OtpVerifier
from booking_os.integrations.payments import PaymentVerifier, RazorpayPaymentVerifier
from booking_os.notifications.dispatcher import QueueNotificationDispatcher
from booking_os.observability.logger import BookingEventLogger
from booking_os.scheduling.public_booking import PublicBookingOrchestrator
from booking_os.scheduling.scheduler import SchedulingService
from booking_os.scheduling.state_machine import BookingStateMachine

logger = logging.getLogger(__name__)


@dataclass
class BookingServices:
    machine: BookingStateMachine
    scheduler: SchedulingService
    orchestrator: PublicBookingOrchestrator
    dispatcher: Optional[QueueNotificationDispatcher] = None


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Optional[Callable[[], datetime]] = None,
    payment_verifier: Optional[PaymentVerifier] = None,
    otp_sender: Optional[OtpSender] = None,
    dispatcher: Optional[QueueNotificationDispatcher] = None,
    events: Optional[BookingEventLogger] = None,
) -> BookingServices:
    """Assemble the engine from settings, letting callers swap any collaborator."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    dispatcher = dispatcher or QueueNotificationDispatcher(maxsize=settings.notification_queue_size)
    events = events or BookingEventLogger(log_dir=settings.event_log_dir, enabled=settings.events_enabled)

    if payment_verifier is None and settings.has_razorpay_keys:
        payment_verifier = RazorpayPaymentVerifier.from_settings(settings)
    elif payment_verifier is None:
        logger.warning("Razorpay keys not configured; paid online bookings will require a passcode")

    machine = BookingStateMachine(
        session_factory,
        dispatcher=dispatcher,
        events=events,
        settings=settings,
        clock=clock,
    )
    orchestrator = PublicBookingOrchestrator(
        machine,
        otp_issuer=OtpIssuer(
            secret=settings.otp_secret,
            sender=otp_sender,
            length=settings.otp_length,
            ttl_minutes=settings.otp_ttl_minutes,
            clock=machine.clock,
        ),
        otp_verifier=OtpVerifier(secret=settings.otp_secret, clock=machine.clock),
        payment_verifier=payment_verifier,
        settings=settings,
    )
    return BookingServices(
        machine=machine,
        scheduler=SchedulingService(session_factory, clock=machine.clock),
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )
