"""Critical sections keyed by booking scope.

Bookings that could overlap share a key of the form
``scope:{business}:{staff or '-'}:{date}``; lifecycle operations on a single
appointment share ``appointment:{id}``. When both are needed the scope key is
always taken first.

In-process exclusion uses one ``asyncio.Lock`` per key. On PostgreSQL a
transaction-scoped advisory lock on the same key extends the exclusion
across worker processes.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def scope_key(business_id: str, staff_id: Optional[str], day: date) -> str:
    return f"scope:{business_id}:{staff_id or '-'}:{day.isoformat()}"


def appointment_key(appointment_id: str) -> str:
    return f"appointment:{appointment_id}"


class ScopeLockRegistry:
    """Named asyncio locks, created on demand and dropped once idle."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Acquire ``keys`` in the given order and release them in reverse."""
        ordered = list(dict.fromkeys(keys))
        acquired: list[str] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._checkin(key)

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        self._waiters[key] -= 1
        if self._waiters[key] == 0:
            del self._waiters[key]
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _advisory_id(key: str) -> int:
    digest = hashlib.blake2b(key.encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


async def advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """Take a PostgreSQL advisory lock held until the current transaction ends.

    No-op on other databases, where the in-process registry is the only guard.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": _advisory_id(key)})
    logger.debug(f"Advisory lock taken for {key}")
