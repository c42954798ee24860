"""Persistence-backed appointment lifecycle.

``BookingStateMachine`` is the only writer of appointment status. Every
operation runs in its own transaction inside the critical section for the
keys it touches (see ``booking_os.core.locks``), applies a pure transition
from ``booking_os.scheduling.lifecycle`` and writes the result back.
Notifications are submitted after commit and never affect the outcome.
"""

import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_os.config import Settings, get_settings
from booking_os.core.locks import ScopeLockRegistry, advisory_xact_lock, appointment_key, scope_key
from booking_os.core.repository import (
    AppointmentRepository,
    AuditRepository,
    BusinessRepository,
    CustomerRepository,
    ServiceRepository,
    StaffRepository,
    TransactionRepository,
)
from booking_os.notifications.dispatcher import NotificationDispatcher
from booking_os.observability.events import EventType
from booking_os.observability.logger import BookingEventLogger, get_event_logger
from booking_os.scheduling import lifecycle
from booking_os.scheduling.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from booking_os.scheduling.models import (
    Actor,
    ActorRole,
    Appointment,
    AppointmentFilter,
    AppointmentPage,
    AppointmentStats,
    AppointmentStatus,
    BookingSource,
    Business,
    PaymentMethod,
    PaymentStatus,
    Service,
)
from booking_os.scheduling.pricing import PricingResolver, initial_payment_status, price_breakdown
from booking_os.scheduling.timeutils import get_zone, minutes_to_time, to_minutes
from booking_os.scheduling.validator import BookingCandidate, BookingValidator, check_requested_span

logger = logging.getLogger(__name__)

_CODE_ATTEMPTS = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_range(start_date: Optional[date], end_date: Optional[date]) -> None:
    if start_date and end_date and start_date > end_date:
        raise ValidationError("Start date must not be after end date")


class CreateAppointmentRequest(BaseModel):
    """Internal (staff-side) booking request."""

    business_id: str
    customer_id: str
    service_id: str
    staff_id: Optional[str] = None
    date: date
    start_time: time
    end_time: Optional[time] = None
    duration: Optional[int] = Field(default=None, gt=0, description="Requested duration for tier matching")
    discount: float = Field(default=0.0, ge=0)
    advance_amount: float = Field(default=0.0, ge=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    booking_source: BookingSource = BookingSource.WALK_IN
    notes: Optional[str] = None
    initial_status: AppointmentStatus = AppointmentStatus.PENDING


class BookingDraft(BaseModel):
    """Everything needed to insert an appointment once scope is locked."""

    business: Business
    service: Service
    customer_id: str
    staff_id: Optional[str] = None
    date: date
    start_time: time
    end_time: Optional[time] = None
    duration: Optional[int] = None
    tax_rate: float = 0.0
    discount: float = 0.0
    advance_amount: float = 0.0
    paid_in_full: bool = False
    payment_status: Optional[PaymentStatus] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_reference: Optional[str] = None
    booking_source: BookingSource = BookingSource.WALK_IN
    notes: Optional[str] = None
    initial_status: AppointmentStatus = AppointmentStatus.PENDING


class BookingStateMachine:
    """Creates appointments and drives them through their lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[ScopeLockRegistry] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        events: Optional[BookingEventLogger] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or ScopeLockRegistry()
        self.dispatcher = dispatcher
        self.events = events or get_event_logger()
        self.settings = settings or get_settings()
        self.clock = clock or _utcnow
        self.pricing = PricingResolver()
        self.validator = BookingValidator(clock=self.clock)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, actor: Actor, request: CreateAppointmentRequest) -> Appointment:
        """Validate, price and persist a new appointment.

        Raises:
            AuthorizationError: Actor may not book for this business
            NotFoundError: Unknown business, customer, service or staff
            ValidationError: Policy violations (all of them)
            ConflictError: The interval is taken in this scope
        """
        self.authorize(actor, request.business_id)
        if request.initial_status not in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED):
            raise ValidationError("New appointments must start as pending or confirmed")

        key = scope_key(request.business_id, request.staff_id, request.date)
        async with self.locks.hold(key):
            async with self.session_factory() as session, session.begin():
                await advisory_xact_lock(session, key)
                business = await self.load_business(session, request.business_id)
                if await CustomerRepository(session).get(business.id, request.customer_id) is None:
                    raise NotFoundError(f"Customer {request.customer_id} not found")
                service = await ServiceRepository(session).get(business.id, request.service_id)
                if service is None:
                    raise NotFoundError(f"Service {request.service_id} not found")

                draft = BookingDraft(
                    business=business,
                    service=service,
                    customer_id=request.customer_id,
                    staff_id=request.staff_id,
                    date=request.date,
                    start_time=request.start_time,
                    end_time=request.end_time,
                    duration=request.duration,
                    tax_rate=self.settings.tax_rate,
                    discount=request.discount,
                    advance_amount=request.advance_amount,
                    payment_method=request.payment_method,
                    booking_source=request.booking_source,
                    notes=request.notes,
                    initial_status=request.initial_status,
                )
                appt = await self.book_in_session(session, actor, draft)

        self.notify("appointment_created", appt)
        return appt

    async def book_in_session(self, session: AsyncSession, actor: Actor, draft: BookingDraft) -> Appointment:
        """Insert an appointment inside an open transaction.

        The caller must already hold the scope lock for
        ``(business, staff, date)`` and have started the transaction.
        """
        business, service = draft.business, draft.service
        if draft.staff_id is not None and not await StaffRepository(session).exists(business.id, draft.staff_id):
            raise NotFoundError(f"Staff {draft.staff_id} not found")

        check_requested_span(draft.start_time, draft.end_time, draft.duration)
        requested = draft.duration
        if requested is None and draft.end_time is not None:
            requested = to_minutes(draft.end_time) - to_minutes(draft.start_time)
        quote = self.pricing.resolve(service, requested)

        end_time = draft.end_time
        if end_time is None:
            end_minutes = to_minutes(draft.start_time) + quote.duration
            if end_minutes >= 24 * 60:
                raise ValidationError("Appointment time must be within business working hours")
            end_time = minutes_to_time(end_minutes)

        candidate = BookingCandidate(
            date=draft.date,
            start_time=draft.start_time,
            end_time=end_time,
            staff_id=draft.staff_id,
            source=draft.booking_source,
        )
        existing = await AppointmentRepository(session).list_active_in_scope(business.id, draft.date, draft.staff_id)
        try:
            self.validator.validate(business.policy, candidate, existing)
        except ConflictError:
            self.events.log(
                EventType.BOOKING_CONFLICT,
                business_id=business.id,
                actor_id=actor.id,
                metadata={"date": draft.date.isoformat(), "start": draft.start_time.isoformat(), "staff_id": draft.staff_id},
            )
            raise
        except ValidationError as e:
            self.events.log(
                EventType.BOOKING_REJECTED, business_id=business.id, actor_id=actor.id, metadata={"errors": e.errors}
            )
            raise

        totals = price_breakdown(quote.price, draft.tax_rate, draft.discount)
        if draft.advance_amount > totals.total_amount:
            raise ValidationError("Advance amount cannot exceed the total amount")
        paid = totals.total_amount if draft.paid_in_full else draft.advance_amount
        payment_status = draft.payment_status or initial_payment_status(paid, totals.total_amount)

        now = self.clock()
        appt = Appointment(
            id=str(uuid.uuid4()),
            confirmation_code=await self._new_confirmation_code(session, business),
            business_id=business.id,
            customer_id=draft.customer_id,
            service_id=service.id,
            staff_id=draft.staff_id,
            date=draft.date,
            start_time=draft.start_time,
            end_time=end_time,
            duration=to_minutes(end_time) - to_minutes(draft.start_time),
            service_price=totals.service_price,
            tax=totals.tax,
            discount=totals.discount,
            total_amount=totals.total_amount,
            paid_amount=paid,
            advance_amount=draft.advance_amount,
            payment_status=payment_status,
            payment_method=draft.payment_method,
            payment_reference=draft.payment_reference,
            status=draft.initial_status,
            booking_source=draft.booking_source,
            notes=draft.notes,
            created_by=actor.id,
            updated_by=actor.id,
            created_at=now,
            updated_at=now,
        )
        try:
            await AppointmentRepository(session).add(appt)
        except IntegrityError as e:
            raise ConflictError("Confirmation code collision, please retry") from e
        await AuditRepository(session).log_action(
            "create", "appointment", appt.id, actor_id=actor.id, actor_role=actor.role.value,
            details={"confirmation_code": appt.confirmation_code},
        )
        self.events.log(
            EventType.APPOINTMENT_CREATED,
            business_id=business.id,
            appointment_id=appt.id,
            actor_id=actor.id,
            metadata={"source": appt.booking_source.value, "total": appt.total_amount},
        )
        logger.info(f"Created appointment {appt.confirmation_code} for business {business.id}")
        return appt

    async def _new_confirmation_code(self, session: AsyncSession, business: Business) -> str:
        today = self.clock().astimezone(get_zone(business.policy.timezone)).date()
        repo = AppointmentRepository(session)
        for _ in range(_CODE_ATTEMPTS):
            code = f"{today:%Y%m%d}{secrets.randbelow(10000):04d}"
            if not await repo.code_exists(code):
                return code
        raise ConflictError("Could not allocate a confirmation code, please retry")

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    async def confirm(self, actor: Actor, appointment_id: str) -> Appointment:
        return await self._transition(
            actor, appointment_id, "confirm", EventType.APPOINTMENT_CONFIRMED,
            lambda appt, now: lifecycle.confirm(appt, actor, now),
        )

    async def start(self, actor: Actor, appointment_id: str) -> Appointment:
        return await self._transition(
            actor, appointment_id, "start", EventType.APPOINTMENT_STARTED,
            lambda appt, now: lifecycle.start(appt, actor, now),
        )

    async def mark_no_show(self, actor: Actor, appointment_id: str) -> Appointment:
        return await self._transition(
            actor, appointment_id, "no_show", EventType.APPOINTMENT_NO_SHOW,
            lambda appt, now: lifecycle.mark_no_show(appt, actor, now),
        )

    async def cancel(self, actor: Actor, appointment_id: str, reason: str, fee: float = 0.0) -> Appointment:
        return await self._transition(
            actor, appointment_id, "cancel", EventType.APPOINTMENT_CANCELLED,
            lambda appt, now: lifecycle.cancel(appt, actor, now, reason=reason, fee=fee),
        )

    async def cancel_by_confirmation_code(
        self, code: str, reason: Optional[str] = None
    ) -> tuple[Appointment, float]:
        """Customer self-service cancellation under the business cancellation policy.

        Returns the cancelled appointment and the refund amount owed.
        """
        async with self.session_factory() as session:
            found = await AppointmentRepository(session).get_by_code(code.strip())
            if found is None:
                raise NotFoundError("Appointment not found")
            business = await self.load_business(session, found.business_id)

        actor = Actor(id=found.customer_id, role=ActorRole.CUSTOMER, business_id=found.business_id)
        policy = business.policy
        refund: dict[str, float] = {}

        def apply(appt: Appointment, now: datetime) -> Appointment:
            refund["amount"] = lifecycle.cancellation_refund(
                appt, policy.cancellation_policy, now, get_zone(policy.timezone)
            )
            return lifecycle.cancel(appt, actor, now, reason=reason or "Cancelled by customer")

        appt = await self._transition(
            actor, found.id, "cancel", EventType.APPOINTMENT_CANCELLED, apply, internal_only=False
        )
        return appt, refund["amount"]

    async def add_review(self, actor: Actor, appointment_id: str, rating: int, text: Optional[str] = None) -> Appointment:
        return await self._transition(
            actor, appointment_id, "review", EventType.APPOINTMENT_REVIEWED,
            lambda appt, now: lifecycle.add_review(appt, actor, now, rating=rating, text=text),
            internal_only=False,
        )

    async def complete(self, actor: Actor, appointment_id: str, loyalty_points: int = 0) -> Appointment:
        """Complete an appointment.

        The first completion writes exactly one ledger entry. Every call,
        including repeats, folds the visit into the customer's aggregates and
        grants any positive loyalty points.
        """
        key = appointment_key(appointment_id)
        async with self.locks.hold(key):
            async with self.session_factory() as session, session.begin():
                await advisory_xact_lock(session, key)
                repo = AppointmentRepository(session)
                appt = await self._load(repo, appointment_id)
                self.authorize(actor, appt.business_id)

                now = self.clock()
                with self.events.operation("complete", appointment_id=appt.id, business_id=appt.business_id, actor_id=actor.id) as event:
                    updated = lifecycle.complete(appt, actor, now, loyalty_points=loyalty_points)
                    if updated is not appt:
                        await repo.save(updated)

                    customers = CustomerRepository(session)
                    customer = await customers.get(appt.business_id, appt.customer_id)
                    ledger_written = await TransactionRepository(session).record_completion(updated, customer, now)
                    await customers.record_visit(appt.customer_id, updated.total_amount, now, loyalty_points)
                    event.metadata["ledger_written"] = ledger_written
                    event.metadata["repeat"] = appt.status == AppointmentStatus.COMPLETED

                await AuditRepository(session).log_action(
                    "complete", "appointment", appt.id, actor_id=actor.id, actor_role=actor.role.value,
                    details={"ledger_written": ledger_written, "loyalty_points": loyalty_points},
                )

        self.events.log(EventType.APPOINTMENT_COMPLETED, business_id=updated.business_id, appointment_id=updated.id, actor_id=actor.id)
        self.notify("appointment_completed", updated)
        return updated

    async def reschedule(
        self,
        actor: Actor,
        appointment_id: str,
        new_date: date,
        new_start: time,
        new_end: time,
        reason: Optional[str] = None,
    ) -> Appointment:
        """Move an appointment to a new interval in the same scope.

        Availability is re-checked with the appointment itself excluded. A
        conflict leaves the appointment untouched.
        """
        async with self.session_factory() as session:
            current = await self._load(AppointmentRepository(session), appointment_id, for_update=False)
        self.authorize(actor, current.business_id)

        scope = scope_key(current.business_id, current.staff_id, new_date)
        key = appointment_key(appointment_id)
        async with self.locks.hold(scope, key):
            async with self.session_factory() as session, session.begin():
                await advisory_xact_lock(session, scope)
                await advisory_xact_lock(session, key)
                repo = AppointmentRepository(session)
                appt = await self._load(repo, appointment_id)
                business = await self.load_business(session, appt.business_id)

                now = self.clock()
                updated = lifecycle.reschedule(appt, actor, now, new_date, new_start, new_end, reason=reason)
                existing = await repo.list_active_in_scope(appt.business_id, new_date, appt.staff_id)
                candidate = BookingCandidate(
                    date=new_date,
                    start_time=new_start,
                    end_time=new_end,
                    staff_id=appt.staff_id,
                    source=appt.booking_source,
                )
                self.validator.validate(
                    business.policy, candidate, existing, exclude_id=appt.id, enforce_advance_window=False, now=now
                )
                await repo.save(updated)
                await AuditRepository(session).log_action(
                    "reschedule", "appointment", appt.id, actor_id=actor.id, actor_role=actor.role.value,
                    details={"from": f"{appt.date} {appt.start_time}", "to": f"{new_date} {new_start}"},
                )

        self.events.log(EventType.APPOINTMENT_RESCHEDULED, business_id=updated.business_id, appointment_id=updated.id, actor_id=actor.id)
        self.notify("appointment_rescheduled", updated)
        return updated

    async def _transition(
        self,
        actor: Actor,
        appointment_id: str,
        action: str,
        event_type: EventType,
        apply: Callable[[Appointment, datetime], Appointment],
        internal_only: bool = True,
    ) -> Appointment:
        key = appointment_key(appointment_id)
        async with self.locks.hold(key):
            async with self.session_factory() as session, session.begin():
                await advisory_xact_lock(session, key)
                repo = AppointmentRepository(session)
                appt = await self._load(repo, appointment_id)
                self.authorize(actor, appt.business_id, internal_only=internal_only)
                updated = apply(appt, self.clock())
                await repo.save(updated)
                await AuditRepository(session).log_action(
                    action, "appointment", appt.id, actor_id=actor.id, actor_role=actor.role.value,
                    details={"from": appt.status.value, "to": updated.status.value},
                )

        self.events.log(event_type, business_id=updated.business_id, appointment_id=updated.id, actor_id=actor.id)
        self.notify(event_type.value, updated)
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, actor: Actor, appointment_id: str) -> Appointment:
        async with self.session_factory() as session:
            appt = await self._load(AppointmentRepository(session), appointment_id, for_update=False)
        self.authorize(actor, appt.business_id, internal_only=False)
        return appt

    async def get_by_confirmation_code(self, code: str) -> Appointment:
        async with self.session_factory() as session:
            appt = await AppointmentRepository(session).get_by_code(code.strip())
        if appt is None:
            raise NotFoundError("Appointment not found")
        return appt

    async def list_for_day(
        self, actor: Actor, business_id: str, day: date, staff_id: Optional[str] = None
    ) -> list[Appointment]:
        self.authorize(actor, business_id)
        async with self.session_factory() as session:
            return await AppointmentRepository(session).list_for_day(business_id, day, staff_id)

    async def list_appointments(
        self, actor: Actor, business_id: str, filters: Optional[AppointmentFilter] = None
    ) -> AppointmentPage:
        """Filtered, paginated listing for the back office."""
        self.authorize(actor, business_id)
        filters = filters or AppointmentFilter()
        _check_range(filters.start_date, filters.end_date)
        async with self.session_factory() as session:
            items, total = await AppointmentRepository(session).search(business_id, filters)
        return AppointmentPage(
            items=items,
            total=total,
            page=filters.page,
            limit=filters.limit,
            pages=-(-total // filters.limit),
        )

    async def appointment_stats(
        self,
        actor: Actor,
        business_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> AppointmentStats:
        self.authorize(actor, business_id)
        _check_range(start_date, end_date)
        async with self.session_factory() as session:
            return await AppointmentRepository(session).stats(business_id, start_date, end_date)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def load_business(self, session: AsyncSession, business_id: str) -> Business:
        business = await BusinessRepository(session).get(business_id)
        if business is None:
            raise NotFoundError(f"Business {business_id} not found")
        return business

    @staticmethod
    async def _load(repo: AppointmentRepository, appointment_id: str, for_update: bool = True) -> Appointment:
        appt = await repo.get(appointment_id, for_update=for_update)
        if appt is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appt

    @staticmethod
    def authorize(actor: Actor, business_id: str, internal_only: bool = True) -> None:
        if internal_only and not actor.is_internal:
            raise AuthorizationError("Customers cannot manage appointments directly")
        if not actor.can_access(business_id):
            raise AuthorizationError(f"Actor {actor.id} cannot access business {business_id}")

    def notify(self, event_type: str, appt: Appointment) -> None:
        if self.dispatcher is None:
            return
        payload: dict[str, Any] = {
            "appointment_id": appt.id,
            "business_id": appt.business_id,
            "customer_id": appt.customer_id,
            "confirmation_code": appt.confirmation_code,
            "status": appt.status.value,
            "date": appt.date.isoformat(),
            "start_time": appt.start_time.strftime("%H:%M"),
        }
        self.dispatcher.submit(event_type, payload)
