"""Two-phase public (online) booking.

Phase 1 validates a request without persisting it. A verified payment
commits straight away; anything else issues a one-time passcode bound to
the customer's phone and parks a snapshot of the request next to it.

Phase 2 redeems the passcode, re-checks availability under the scope lock
and creates the appointment. The passcode is consumed in the same
transaction, so at most one appointment can come out of it.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from booking_os.config import Settings
from booking_os.core.locks import advisory_xact_lock, scope_key
from booking_os.core.repository import (
    AppointmentRepository,
    BusinessRepository,
    CustomerRepository,
    OtpRepository,
    ServiceRepository,
    as_utc,
)
from booking_os.integrations.otp import OtpIssuer, OtpVerifier
from booking_os.integrations.payments import PaymentVerification, PaymentVerifier
from booking_os.observability.events import EventType
from booking_os.scheduling.errors import ExternalDependencyError, NotFoundError, ValidationError
from booking_os.scheduling.models import (
    Actor,
    ActorRole,
    Appointment,
    BookingSource,
    Business,
    Customer,
    PaymentMethod,
    PaymentStatus,
    Service,
)
from booking_os.scheduling.state_machine import BookingDraft, BookingStateMachine
from booking_os.scheduling.timeutils import minutes_to_time, to_minutes
from booking_os.scheduling.validator import BookingCandidate, check_requested_span

logger = logging.getLogger(__name__)


class PaymentProof(BaseModel):
    """What the checkout widget hands back after payment."""

    order_id: str
    payment_id: str
    signature: str


class PublicBookingRequest(BaseModel):
    customer_name: str = Field(min_length=1)
    phone: str = Field(min_length=6, max_length=20)
    email: Optional[str] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    service_price: Optional[float] = Field(default=None, ge=0)
    service_duration: Optional[int] = Field(default=None, gt=0)
    staff_id: Optional[str] = None
    date: date
    start_time: time
    end_time: Optional[time] = None
    duration: Optional[int] = Field(default=None, gt=0)
    discount: float = Field(default=0.0, ge=0)
    notes: Optional[str] = None
    payment: Optional[PaymentProof] = None


class PublicBookingResponse(BaseModel):
    requires_verification: bool
    phone: Optional[str] = None
    expires_at: Optional[datetime] = None
    appointment: Optional[Appointment] = None


class PublicCancellation(BaseModel):
    appointment: Appointment
    refund_amount: float


class PublicBookingOrchestrator:
    """Runs the request/verify protocol for bookings made by the public."""

    def __init__(
        self,
        machine: BookingStateMachine,
        otp_issuer: OtpIssuer,
        otp_verifier: OtpVerifier,
        payment_verifier: Optional[PaymentVerifier] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.machine = machine
        self.otp_issuer = otp_issuer
        self.otp_verifier = otp_verifier
        self.payment_verifier = payment_verifier
        self.settings = settings or machine.settings
        self.clock = clock or machine.clock
        self.events = machine.events

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def request_booking(self, slug: str, request: PublicBookingRequest) -> PublicBookingResponse:
        """Validate a public booking and either commit it (verified payment) or issue a passcode.

        Raises:
            NotFoundError: Unknown business
            ValidationError: Policy violations
            ConflictError: Slot already taken
            ExternalDependencyError: The passcode could not be sent
        """
        async with self.machine.session_factory() as session:
            business = await self._business(session, slug)
            service = await self._preview_service(session, business, request)
            existing = await AppointmentRepository(session).list_active_in_scope(
                business.id, request.date, request.staff_id
            )

        candidate = self._candidate(service, request)
        self.machine.validator.validate(business.policy, candidate, existing)

        verification = await self._verify_payment(business, request.payment)
        if verification is not None and verification.verified:
            appt = await self._commit(business, request, verification)
            return PublicBookingResponse(requires_verification=False, phone=request.phone, appointment=appt)

        issued = await self.otp_issuer.issue(request.phone)
        async with self.machine.session_factory() as session, session.begin():
            otps = OtpRepository(session)
            await otps.purge_expired(self.clock())
            await otps.create(
                phone=request.phone,
                business_slug=slug,
                code_hash=issued.code_hash,
                expires_at=issued.expires_at,
                payload=request.model_dump(mode="json"),
            )

        self.events.log(
            EventType.OTP_ISSUED,
            business_id=business.id,
            metadata={"phone_suffix": request.phone[-4:], "payment_attached": request.payment is not None},
        )
        logger.info(f"Passcode issued for public booking at {slug} on {request.date} {request.start_time}")
        return PublicBookingResponse(requires_verification=True, phone=request.phone, expires_at=issued.expires_at)

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def verify_booking(self, slug: str, phone: str, code: str) -> Appointment:
        """Redeem a passcode and create the parked booking.

        Raises:
            NotFoundError: No live passcode for this phone, or it was already used
            ValidationError: Wrong passcode or a snapshot that no longer passes policy
            ConflictError: The slot was taken while the passcode was outstanding
        """
        now = self.clock()
        async with self.machine.session_factory() as session, session.begin():
            otps = OtpRepository(session)
            record = await otps.latest_active(phone, now, business_slug=slug)
            if record is None:
                raise NotFoundError("OTP not found or expired")
            record_id, payload = record.id, record.payload
            matched = self.otp_verifier.verify(code, record.code_hash, as_utc(record.expires_at))
            if not matched:
                attempts = await otps.register_failure(record_id)
                exhausted = attempts >= self.settings.otp_max_attempts
                if exhausted:
                    await otps.consume(record_id)

        if not matched:
            self.events.log(EventType.OTP_FAILED, metadata={"phone_suffix": phone[-4:], "exhausted": exhausted})
            if exhausted:
                raise ValidationError("Invalid OTP. Too many attempts, please request a new code")
            raise ValidationError("Invalid OTP")

        try:
            request = PublicBookingRequest.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError("Session expired or invalid data") from e

        async with self.machine.session_factory() as session:
            business = await self._business(session, slug)
        verification = await self._verify_payment(business, request.payment)
        return await self._commit(business, request, verification, otp_record_id=record_id)

    # ------------------------------------------------------------------
    # Public self-service
    # ------------------------------------------------------------------

    async def get_by_confirmation_code(self, code: str) -> Appointment:
        return await self.machine.get_by_confirmation_code(code)

    async def cancel_by_confirmation_code(self, code: str, reason: Optional[str] = None) -> PublicCancellation:
        appt, refund = await self.machine.cancel_by_confirmation_code(code, reason)
        return PublicCancellation(appointment=appt, refund_amount=refund)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def _commit(
        self,
        business: Business,
        request: PublicBookingRequest,
        verification: Optional[PaymentVerification],
        otp_record_id: Optional[str] = None,
    ) -> Appointment:
        paid = verification is not None and verification.verified
        if request.payment is not None and not paid:
            # Trust but verify: an unproven payment books as unpaid.
            self.events.log(
                EventType.PAYMENT_MISMATCH,
                business_id=business.id,
                metadata={"order_id": request.payment.order_id, "status": verification.status if verification else None},
            )

        key = scope_key(business.id, request.staff_id, request.date)
        async with self.machine.locks.hold(key):
            async with self.machine.session_factory() as session, session.begin():
                await advisory_xact_lock(session, key)
                if otp_record_id is not None and not await OtpRepository(session).consume(otp_record_id):
                    raise NotFoundError("OTP not found or expired")

                customer = await self._resolve_customer(session, business, request)
                service = await self._resolve_service(session, business, request)
                actor = Actor(id=customer.id, role=ActorRole.CUSTOMER, business_id=business.id)
                draft = BookingDraft(
                    business=business,
                    service=service,
                    customer_id=customer.id,
                    staff_id=request.staff_id,
                    date=request.date,
                    start_time=request.start_time,
                    end_time=request.end_time,
                    duration=request.duration,
                    tax_rate=self.settings.online_tax_rate,
                    discount=request.discount,
                    paid_in_full=paid,
                    payment_status=PaymentStatus.PAID if paid else PaymentStatus.PENDING,
                    payment_method=PaymentMethod.ONLINE if request.payment else PaymentMethod.CASH,
                    payment_reference=request.payment.payment_id if paid else None,
                    booking_source=BookingSource.ONLINE,
                    notes=request.notes,
                )
                appt = await self.machine.book_in_session(session, actor, draft)

        if paid:
            self.events.log(EventType.PAYMENT_VERIFIED, business_id=business.id, appointment_id=appt.id)
        self.machine.notify("appointment_created", appt)
        return appt

    async def _verify_payment(
        self, business: Business, proof: Optional[PaymentProof]
    ) -> Optional[PaymentVerification]:
        if proof is None or self.payment_verifier is None:
            return None
        try:
            return await self.payment_verifier.verify(proof.order_id, proof.payment_id, proof.signature)
        except ExternalDependencyError as e:
            logger.warning(f"Payment verification unavailable for {business.slug}: {e}")
            return PaymentVerification(verified=False, reason="provider_unavailable")

    # ------------------------------------------------------------------
    # Resolution helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _business(session, slug: str) -> Business:
        business = await BusinessRepository(session).get_by_slug(slug)
        if business is None:
            raise NotFoundError(f"Business {slug} not found")
        return business

    @staticmethod
    async def _find_service(session, business: Business, request: PublicBookingRequest) -> Optional[Service]:
        services = ServiceRepository(session)
        service = None
        if request.service_id:
            service = await services.get(business.id, request.service_id)
        if service is None and request.service_name:
            service = await services.get_by_name(business.id, request.service_name)
        return service

    async def _preview_service(self, session, business: Business, request: PublicBookingRequest) -> Service:
        """The service the booking would use, without creating it."""
        service = await self._find_service(session, business, request)
        if service is not None:
            return service
        if not request.service_name:
            raise NotFoundError("Service not found")
        return Service(
            id="",
            business_id=business.id,
            name=request.service_name,
            price=request.service_price,
            duration=request.service_duration,
        )

    async def _resolve_service(self, session, business: Business, request: PublicBookingRequest) -> Service:
        service = await self._find_service(session, business, request)
        if service is not None:
            return service
        if not request.service_name:
            raise NotFoundError("Service not found")
        logger.info(f"Creating service {request.service_name!r} for business {business.id} from public booking")
        return await ServiceRepository(session).create(
            business_id=business.id,
            name=request.service_name.strip(),
            price=request.service_price or 0.0,
            duration=request.service_duration,
            category="General",
        )

    @staticmethod
    async def _resolve_customer(session, business: Business, request: PublicBookingRequest) -> Customer:
        customers = CustomerRepository(session)
        customer = await customers.find_by_contact(business.id, phone=request.phone, email=request.email)
        if customer is not None:
            return customer
        first_name, _, last_name = request.customer_name.strip().partition(" ")
        return await customers.create(
            business_id=business.id,
            first_name=first_name,
            last_name=last_name.strip(),
            phone=request.phone,
            email=request.email.lower() if request.email else None,
            source=BookingSource.ONLINE.value,
        )

    def _candidate(self, service: Service, request: PublicBookingRequest) -> BookingCandidate:
        check_requested_span(request.start_time, request.end_time, request.duration)
        end_time = request.end_time
        if end_time is None:
            quote = self.machine.pricing.resolve(service, request.duration)
            end_minutes = to_minutes(request.start_time) + quote.duration
            if end_minutes >= 24 * 60:
                raise ValidationError("Appointment time must be within business working hours")
            end_time = minutes_to_time(end_minutes)
        return BookingCandidate(
            date=request.date,
            start_time=request.start_time,
            end_time=end_time,
            staff_id=request.staff_id,
            source=BookingSource.ONLINE,
        )
