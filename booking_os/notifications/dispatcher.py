"""Outbound notification queue.

Committed booking changes are handed to ``submit`` which only enqueues; a
background worker delivers them to the configured sinks. Delivery failures
are logged and never reach the booking that produced them.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSink(Protocol):
    """A delivery channel (email, SMS, push, staff dashboard)."""

    name: str

    async def send(self, notification: Notification) -> None: ...


class NotificationDispatcher(Protocol):
    def submit(self, event_type: str, payload: dict[str, Any]) -> bool: ...


class LoggingSink:
    """Writes notifications to the application log."""

    name = "log"

    async def send(self, notification: Notification) -> None:
        logger.info(f"Notification {notification.event_type}: {notification.payload}")


class QueueNotificationDispatcher:
    """Fire-and-forget dispatcher backed by an ``asyncio.Queue``."""

    def __init__(self, sinks: Optional[list[NotificationSink]] = None, maxsize: int = 1000) -> None:
        self.sinks: list[NotificationSink] = list(sinks) if sinks is not None else [LoggingSink()]
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def submit(self, event_type: str, payload: dict[str, Any]) -> bool:
        """Enqueue without waiting; returns False when the queue is full."""
        try:
            self._queue.put_nowait(Notification(event_type=event_type, payload=payload))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Notification queue full, dropped {event_type}")
            return False
        return True

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
        logger.info(f"Notification dispatcher started with sinks: {[s.name for s in self.sinks]}")

    async def stop(self, drain: bool = True) -> None:
        if drain and self.running:
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                await sink.send(notification)
            except Exception as e:
                logger.warning(f"Notification sink {sink.name} failed for {notification.event_type}: {e}")
