"""Pytest configuration and fixtures."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_os.config import Settings
from booking_os.core.database import build_engine, build_session_factory, create_tables
from booking_os.core.repository import (
    BusinessRepository,
    CustomerRepository,
    ServiceRepository,
    StaffRepository,
)
from booking_os.observability import BookingEventLogger
from booking_os.scheduling.models import (
    Actor,
    ActorRole,
    Appointment,
    AppointmentStatus,
    BusinessPolicy,
    WorkingHours,
)
from booking_os.scheduling.state_machine import BookingStateMachine

# Monday 10:00 UTC. Tests run against a business in UTC unless stated otherwise.
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
TODAY = NOW.date()
TOMORROW = TODAY + timedelta(days=1)

BUSINESS_SETTINGS = {
    "timezone": "UTC",
    "working_hours": {"open_time": "09:00", "close_time": "18:00"},
    "slot_duration": 30,
    "buffer_time": 0,
    "min_advance_booking_hours": 1,
    "max_advance_booking_hours": 720,
    "cancellation_policy": {"allow_cancellation": True, "min_cancellation_hours": 10, "refund_percentage": 50},
}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingDispatcher:
    """Captures notifications instead of delivering them."""

    def __init__(self):
        self.submitted: list[tuple[str, dict[str, Any]]] = []

    def submit(self, event_type: str, payload: dict[str, Any]) -> bool:
        self.submitted.append((event_type, payload))
        return True

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.submitted]


def make_policy(**overrides) -> BusinessPolicy:
    data = {
        "timezone": "UTC",
        "working_hours": WorkingHours(open_time=time(9, 0), close_time=time(18, 0)),
        "slot_duration": 30,
        "buffer_time": 0,
    }
    data.update(overrides)
    return BusinessPolicy(**data)


def make_appointment(
    start: time,
    end: time,
    staff_id: Optional[str] = "staff-a",
    status: AppointmentStatus = AppointmentStatus.CONFIRMED,
    day: date = TOMORROW,
    appointment_id: str = "appt-1",
    total: float = 500.0,
) -> Appointment:
    duration = (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)
    return Appointment(
        id=appointment_id,
        confirmation_code=f"{day:%Y%m%d}0001",
        business_id="biz-1",
        customer_id="cust-1",
        service_id="svc-1",
        staff_id=staff_id,
        date=day,
        start_time=start,
        end_time=end,
        duration=duration,
        service_price=total,
        total_amount=total,
        status=status,
        created_by="tester",
        updated_by="tester",
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}",
        tax_rate=0.18,
        online_tax_rate=0.0,
        otp_secret="test-secret",
        otp_max_attempts=3,
        event_log_dir=tmp_path / "events",
        events_enabled=True,
    )


@pytest.fixture
def events(tmp_path):
    return BookingEventLogger(log_dir=tmp_path / "events", enabled=True)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def engine(settings):
    eng = build_engine(settings.database_url)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def seed(session_factory):
    """One business with two staff members, a flat service, a tiered service and a customer."""
    async with session_factory() as session, session.begin():
        business = await BusinessRepository(session).create(
            name="Glow Salon", slug="glow-salon", settings=BUSINESS_SETTINGS
        )
        staff = StaffRepository(session)
        staff_a = await staff.create(business_id=business.id, name="Asha")
        staff_b = await staff.create(business_id=business.id, name="Bela")
        services = ServiceRepository(session)
        haircut = await services.create(business_id=business.id, name="Haircut", price=500.0, duration=30)
        facial = await services.create(
            business_id=business.id,
            name="Facial",
            pricing_options=[
                {"label": "Express", "price": 500.0, "duration": 30},
                {"label": "Deluxe", "price": 900.0, "duration": 60},
            ],
        )
        customer = await CustomerRepository(session).create(
            business_id=business.id, first_name="Riya", last_name="Shah", phone="9876543210"
        )
    return {
        "business_id": business.id,
        "slug": business.slug,
        "staff_a": staff_a.id,
        "staff_b": staff_b.id,
        "haircut": haircut.id,
        "facial": facial.id,
        "customer_id": customer.id,
    }


@pytest.fixture
def manager(seed) -> Actor:
    return Actor(id="manager-1", role=ActorRole.MANAGER, business_id=seed["business_id"])


@pytest.fixture
def machine(session_factory, dispatcher, events, settings, clock) -> BookingStateMachine:
    return BookingStateMachine(
        session_factory,
        dispatcher=dispatcher,
        events=events,
        settings=settings,
        clock=clock,
    )
