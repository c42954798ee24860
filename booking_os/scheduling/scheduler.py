"""Read-side scheduling queries."""

import logging
from collections.abc import Callable
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_os.core.repository import AppointmentRepository, BusinessRepository
from booking_os.scheduling.errors import NotFoundError
from booking_os.scheduling.models import TimeSlot
from booking_os.scheduling.slots import TimeSlotGenerator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulingService:
    """Answers availability questions without taking any locks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.generator = TimeSlotGenerator(clock=clock or _utcnow)

    async def get_available_slots(
        self,
        business_id: str,
        day: date,
        staff_id: Optional[str] = None,
    ) -> list[TimeSlot]:
        """All slots of ``day`` for the given scope, each flagged available or not."""
        async with self.session_factory() as session:
            business = await BusinessRepository(session).get(business_id)
            if business is None:
                raise NotFoundError(f"Business {business_id} not found")
            existing = await AppointmentRepository(session).list_active_in_scope(business_id, day, staff_id)

        slots = self.generator.generate(business.policy, day, existing, staff_id=staff_id)
        logger.debug(f"{len(slots)} slots for {business_id} on {day} (staff={staff_id})")
        return slots

    async def get_available_slots_by_slug(
        self, slug: str, day: date, staff_id: Optional[str] = None
    ) -> list[TimeSlot]:
        async with self.session_factory() as session:
            business = await BusinessRepository(session).get_by_slug(slug)
        if business is None:
            raise NotFoundError(f"Business {slug} not found")
        return await self.get_available_slots(business.id, day, staff_id)
