"""Repositories mapping booking-store rows to domain values."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import case, delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from booking_os.config import get_settings
from booking_os.core.models import (
    AppointmentDB,
    AuditLog,
    BusinessDB,
    CustomerDB,
    OtpRecordDB,
    ServiceDB,
    StaffDB,
    TransactionDB,
)
from booking_os.scheduling.models import (
    Appointment,
    AppointmentFilter,
    AppointmentStats,
    AppointmentStatus,
    Business,
    BusinessPolicy,
    Customer,
    PaymentStatus,
    Service,
    TERMINAL_STATUSES,
)

_TERMINAL = [s.value for s in TERMINAL_STATUSES]


def _range_conditions(business_id: str, start_date: Optional[date], end_date: Optional[date]) -> list:
    conditions = [AppointmentDB.business_id == business_id]
    if start_date is not None:
        conditions.append(AppointmentDB.appointment_date >= start_date)
    if end_date is not None:
        conditions.append(AppointmentDB.appointment_date <= end_date)
    return conditions


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def customer_type_for(visits: int) -> str:
    if visits >= 20:
        return "vip"
    if visits >= 5:
        return "regular"
    return "new"


# ----------------------------------------------------------------------
# Row <-> domain conversion
# ----------------------------------------------------------------------


def business_to_domain(row: BusinessDB) -> Business:
    return Business(
        id=row.id,
        name=row.name,
        slug=row.slug,
        policy=BusinessPolicy.model_validate(row.settings or {}),
    )


def service_to_domain(row: ServiceDB) -> Service:
    return Service(
        id=row.id,
        business_id=row.business_id,
        name=row.name,
        price=row.price,
        duration=row.duration,
        pricing_options=row.pricing_options or [],
        category=row.category,
        is_active=row.is_active,
    )


def customer_to_domain(row: CustomerDB) -> Customer:
    return Customer(
        id=row.id,
        business_id=row.business_id,
        first_name=row.first_name,
        last_name=row.last_name or "",
        phone=row.phone,
        email=row.email,
        total_visits=row.total_visits or 0,
        total_spent=row.total_spent or 0.0,
        average_spent=row.average_spent or 0.0,
        customer_type=row.customer_type or "new",
        loyalty_points=row.loyalty_points or 0,
        first_visit=as_utc(row.first_visit),
        last_visit=as_utc(row.last_visit),
    )


def appointment_to_domain(row: AppointmentDB) -> Appointment:
    return Appointment.model_validate(
        {
            "id": row.id,
            "confirmation_code": row.confirmation_code,
            "business_id": row.business_id,
            "customer_id": row.customer_id,
            "service_id": row.service_id,
            "staff_id": row.staff_id,
            "date": row.appointment_date,
            "start_time": row.start_time,
            "end_time": row.end_time,
            "duration": row.duration,
            "service_price": row.service_price,
            "tax": row.tax,
            "discount": row.discount,
            "total_amount": row.total_amount,
            "paid_amount": row.paid_amount,
            "advance_amount": row.advance_amount,
            "payment_status": row.payment_status,
            "payment_method": row.payment_method,
            "payment_reference": row.payment_reference,
            "status": row.status,
            "booking_source": row.booking_source,
            "notes": row.notes,
            "checked_in_at": as_utc(row.checked_in_at),
            "completed_at": as_utc(row.completed_at),
            "actual_duration": row.actual_duration,
            "cancellation": row.cancellation,
            "reschedule_history": row.reschedule_history or [],
            "review": row.review,
            "loyalty_points_earned": row.loyalty_points_earned or 0,
            "created_by": row.created_by,
            "updated_by": row.updated_by,
            "created_at": as_utc(row.created_at),
            "updated_at": as_utc(row.updated_at),
        }
    )


def _appointment_values(appt: Appointment) -> dict[str, Any]:
    data = appt.model_dump(exclude={"date", "cancellation", "reschedule_history", "review"})
    for key in ("payment_status", "payment_method", "status", "booking_source"):
        data[key] = data[key].value
    data["appointment_date"] = appt.date
    data["cancellation"] = appt.cancellation.model_dump(mode="json") if appt.cancellation else None
    data["reschedule_history"] = [e.model_dump(mode="json") for e in appt.reschedule_history]
    data["review"] = appt.review.model_dump(mode="json") if appt.review else None
    return data


# ----------------------------------------------------------------------
# Repositories
# ----------------------------------------------------------------------


class BusinessRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> BusinessDB:
        settings = dict(kwargs.pop("settings", None) or {})
        settings.setdefault("timezone", get_settings().default_timezone)
        business = BusinessDB(settings=settings, **kwargs)
        self.session.add(business)
        await self.session.flush()
        return business

    async def get(self, business_id: str) -> Optional[Business]:
        row = await self.session.get(BusinessDB, business_id)
        if row is None or not row.is_active:
            return None
        return business_to_domain(row)

    async def get_by_slug(self, slug: str) -> Optional[Business]:
        result = await self.session.execute(
            select(BusinessDB).where(BusinessDB.slug == slug, BusinessDB.is_active.is_(True))
        )
        row = result.scalar_one_or_none()
        return business_to_domain(row) if row else None

    async def list_ids(self) -> Sequence[str]:
        result = await self.session.execute(select(BusinessDB.id).order_by(BusinessDB.name))
        return result.scalars().all()


class StaffRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> StaffDB:
        staff = StaffDB(**kwargs)
        self.session.add(staff)
        await self.session.flush()
        return staff

    async def exists(self, business_id: str, staff_id: str) -> bool:
        result = await self.session.execute(
            select(StaffDB.id).where(
                StaffDB.id == staff_id,
                StaffDB.business_id == business_id,
                StaffDB.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none() is not None


class ServiceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Service:
        service = ServiceDB(**kwargs)
        self.session.add(service)
        await self.session.flush()
        return service_to_domain(service)

    async def get(self, business_id: str, service_id: str) -> Optional[Service]:
        row = await self.session.get(ServiceDB, service_id)
        if row is None or row.business_id != business_id:
            return None
        return service_to_domain(row)

    async def get_by_name(self, business_id: str, name: str) -> Optional[Service]:
        result = await self.session.execute(
            select(ServiceDB)
            .where(ServiceDB.business_id == business_id, func.lower(ServiceDB.name) == name.strip().lower())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return service_to_domain(row) if row else None


class CustomerRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Customer:
        customer = CustomerDB(**kwargs)
        self.session.add(customer)
        await self.session.flush()
        return customer_to_domain(customer)

    async def get(self, business_id: str, customer_id: str) -> Optional[Customer]:
        row = await self.session.get(CustomerDB, customer_id)
        if row is None or row.business_id != business_id:
            return None
        return customer_to_domain(row)

    async def find_by_contact(
        self, business_id: str, phone: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Customer]:
        clauses = []
        if phone:
            clauses.append(CustomerDB.phone == phone)
        if email:
            clauses.append(CustomerDB.email == email.lower())
        if not clauses:
            return None
        result = await self.session.execute(
            select(CustomerDB)
            .where(CustomerDB.business_id == business_id, or_(*clauses))
            .order_by(CustomerDB.created_at)
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return customer_to_domain(row) if row else None

    async def record_visit(
        self, customer_id: str, amount: float, at: datetime, loyalty_points: int = 0
    ) -> Optional[Customer]:
        """Fold one completed visit into the customer's aggregates."""
        row = await self.session.get(CustomerDB, customer_id)
        if row is None:
            return None
        row.total_visits = (row.total_visits or 0) + 1
        row.total_spent = (row.total_spent or 0.0) + amount
        row.average_spent = row.total_spent / row.total_visits
        row.last_visit = at
        if row.first_visit is None:
            row.first_visit = at
        row.customer_type = customer_type_for(row.total_visits)
        if loyalty_points > 0:
            row.loyalty_points = (row.loyalty_points or 0) + loyalty_points
        row.updated_at = at
        await self.session.flush()
        return customer_to_domain(row)


class AppointmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, appt: Appointment) -> Appointment:
        self.session.add(AppointmentDB(**_appointment_values(appt)))
        await self.session.flush()
        return appt

    async def save(self, appt: Appointment) -> Appointment:
        values = _appointment_values(appt)
        values.pop("id")
        await self.session.execute(
            update(AppointmentDB).where(AppointmentDB.id == appt.id).values(**values)
        )
        return appt

    async def get(self, appointment_id: str, for_update: bool = False) -> Optional[Appointment]:
        stmt = select(AppointmentDB).where(AppointmentDB.id == appointment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        return appointment_to_domain(row) if row else None

    async def get_by_code(self, code: str) -> Optional[Appointment]:
        result = await self.session.execute(
            select(AppointmentDB)
            .where(AppointmentDB.confirmation_code == code)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return appointment_to_domain(row) if row else None

    async def code_exists(self, code: str) -> bool:
        result = await self.session.execute(
            select(AppointmentDB.id).where(AppointmentDB.confirmation_code == code)
        )
        return result.first() is not None

    async def list_active_in_scope(
        self, business_id: str, day: date, staff_id: Optional[str]
    ) -> list[Appointment]:
        """Non-terminal bookings that compete with ``staff_id`` on ``day``."""
        stmt = select(AppointmentDB).where(
            AppointmentDB.business_id == business_id,
            AppointmentDB.appointment_date == day,
            AppointmentDB.status.not_in(_TERMINAL),
        )
        if staff_id is None:
            stmt = stmt.where(AppointmentDB.staff_id.is_(None))
        else:
            stmt = stmt.where(AppointmentDB.staff_id == staff_id)
        result = await self.session.execute(
            stmt.order_by(AppointmentDB.start_time).execution_options(populate_existing=True)
        )
        return [appointment_to_domain(r) for r in result.scalars().all()]

    async def list_for_day(
        self, business_id: str, day: date, staff_id: Optional[str] = None
    ) -> list[Appointment]:
        stmt = select(AppointmentDB).where(
            AppointmentDB.business_id == business_id,
            AppointmentDB.appointment_date == day,
        )
        if staff_id is not None:
            stmt = stmt.where(AppointmentDB.staff_id == staff_id)
        result = await self.session.execute(stmt.order_by(AppointmentDB.start_time))
        return [appointment_to_domain(r) for r in result.scalars().all()]

    async def list_active(self, business_id: Optional[str] = None) -> list[Appointment]:
        stmt = select(AppointmentDB).where(AppointmentDB.status.not_in(_TERMINAL))
        if business_id is not None:
            stmt = stmt.where(AppointmentDB.business_id == business_id)
        result = await self.session.execute(
            stmt.order_by(AppointmentDB.business_id, AppointmentDB.appointment_date, AppointmentDB.start_time)
        )
        return [appointment_to_domain(r) for r in result.scalars().all()]

    async def search(self, business_id: str, filters: AppointmentFilter) -> tuple[list[Appointment], int]:
        """One page of matching appointments, newest first, and the total match count."""
        conditions = _range_conditions(business_id, filters.start_date, filters.end_date)
        if filters.status is not None:
            conditions.append(AppointmentDB.status == filters.status.value)
        if filters.customer_id:
            conditions.append(AppointmentDB.customer_id == filters.customer_id)
        if filters.staff_id:
            conditions.append(AppointmentDB.staff_id == filters.staff_id)
        if filters.service_id:
            conditions.append(AppointmentDB.service_id == filters.service_id)
        if filters.search and filters.search.strip():
            term = f"%{filters.search.strip()}%"
            customers = select(CustomerDB.id).where(
                CustomerDB.business_id == business_id,
                or_(
                    CustomerDB.first_name.ilike(term),
                    CustomerDB.last_name.ilike(term),
                    CustomerDB.phone.ilike(term),
                    CustomerDB.email.ilike(term),
                ),
            )
            conditions.append(or_(AppointmentDB.confirmation_code.ilike(term), AppointmentDB.customer_id.in_(customers)))

        total = await self.session.scalar(select(func.count()).select_from(AppointmentDB).where(*conditions))
        result = await self.session.execute(
            select(AppointmentDB)
            .where(*conditions)
            .order_by(
                AppointmentDB.created_at.desc(),
                AppointmentDB.appointment_date,
                AppointmentDB.start_time,
                AppointmentDB.id,
            )
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        return [appointment_to_domain(r) for r in result.scalars().all()], total or 0

    async def stats(
        self, business_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> AppointmentStats:
        conditions = _range_conditions(business_id, start_date, end_date)
        counts = await self.session.execute(
            select(AppointmentDB.status, func.count()).where(*conditions).group_by(AppointmentDB.status)
        )
        by_status = {status: 0 for status in AppointmentStatus}
        for status, count in counts.all():
            by_status[AppointmentStatus(status)] = count

        paid = AppointmentDB.payment_status == PaymentStatus.PAID.value
        outstanding = AppointmentDB.total_amount - func.coalesce(AppointmentDB.paid_amount, 0.0)
        row = (
            await self.session.execute(
                select(
                    func.coalesce(func.sum(case((paid, AppointmentDB.total_amount), else_=0.0)), 0.0),
                    func.coalesce(func.sum(case((paid, 0.0), else_=outstanding)), 0.0),
                    func.coalesce(func.sum(AppointmentDB.total_amount), 0.0),
                    func.coalesce(func.sum(AppointmentDB.paid_amount), 0.0),
                    func.avg(AppointmentDB.total_amount),
                ).where(*conditions)
            )
        ).one()
        paid_revenue, pending_revenue, total_revenue, total_paid, average = row
        return AppointmentStats(
            total_appointments=sum(by_status.values()),
            by_status=by_status,
            paid_revenue=round(paid_revenue, 2),
            pending_revenue=round(pending_revenue, 2),
            total_revenue=round(total_revenue, 2),
            total_paid=round(total_paid, 2),
            average_value=round(average or 0.0, 2),
        )


class TransactionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_completion(self, appt: Appointment, customer: Optional[Customer], at: datetime) -> bool:
        """Write the ledger entry for a completed appointment.

        Returns False when an entry for the appointment already exists; the
        unique constraint on ``appointment_id`` makes racing inserts collapse
        into one.
        """
        existing = await self.session.execute(
            select(TransactionDB.id).where(TransactionDB.appointment_id == appt.id)
        )
        if existing.first() is not None:
            return False

        values = {
            "id": str(uuid.uuid4()),
            "business_id": appt.business_id,
            "appointment_id": appt.id,
            "customer_id": appt.customer_id,
            "staff_id": appt.staff_id,
            "service_id": appt.service_id,
            "customer_name": customer.full_name if customer else "",
            "customer_phone": customer.phone if customer else None,
            "base_price": appt.total_amount,
            "discount": 0.0,
            "tax": 0.0,
            "final_price": appt.total_amount,
            "payment_method": appt.payment_method.value,
            "payment_status": "completed",
            "source": "appointment",
            "transaction_date": at,
        }
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(TransactionDB).values(**values).on_conflict_do_nothing(index_elements=["appointment_id"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(TransactionDB).values(**values).on_conflict_do_nothing(index_elements=["appointment_id"])
        else:
            stmt = insert(TransactionDB).values(**values)
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def count_for_appointment(self, appointment_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(TransactionDB).where(TransactionDB.appointment_id == appointment_id)
        )
        return result.scalar_one()


class OtpRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> OtpRecordDB:
        record = OtpRecordDB(**kwargs)
        self.session.add(record)
        await self.session.flush()
        return record

    async def latest_active(self, phone: str, now: datetime, business_slug: Optional[str] = None) -> Optional[OtpRecordDB]:
        stmt = select(OtpRecordDB).where(OtpRecordDB.phone == phone, OtpRecordDB.expires_at > now)
        if business_slug is not None:
            stmt = stmt.where(OtpRecordDB.business_slug == business_slug)
        result = await self.session.execute(
            stmt.order_by(OtpRecordDB.created_at.desc()).limit(1).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def register_failure(self, record_id: str) -> int:
        """Increment the failed-attempt counter and return the new value."""
        await self.session.execute(
            update(OtpRecordDB)
            .where(OtpRecordDB.id == record_id)
            .values(attempts=OtpRecordDB.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(select(OtpRecordDB.attempts).where(OtpRecordDB.id == record_id))
        return result.scalar_one_or_none() or 0

    async def consume(self, record_id: str) -> bool:
        """Delete the record; False if another request already consumed it."""
        result = await self.session.execute(delete(OtpRecordDB).where(OtpRecordDB.id == record_id))
        return result.rowcount == 1

    async def purge_expired(self, now: datetime) -> int:
        result = await self.session.execute(delete(OtpRecordDB).where(OtpRecordDB.expires_at <= now))
        return result.rowcount


class AuditRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_action(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            details=details,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_resource(self, resource_type: str, resource_id: str, limit: int = 50) -> Sequence[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.resource_type == resource_type, AuditLog.resource_id == resource_id)
            .order_by(AuditLog.timestamp.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
