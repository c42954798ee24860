"""Booking event logger writing JSON Lines."""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from booking_os.observability.events import BookingEvent, EventType

logger = logging.getLogger(__name__)


class BookingEventLogger:
    """Central sink for booking telemetry.

    Events are appended to ``{log_dir}/booking_events.jsonl``. Write failures
    are logged and never propagate into the booking path.
    """

    _instance: Optional["BookingEventLogger"] = None

    def __init__(self, log_dir: Optional[Path] = None, enabled: bool = True):
        self.enabled = enabled
        self.log_dir = log_dir or Path("data/events")
        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / "booking_events.jsonl"
        self._callbacks: list[Callable[[BookingEvent], None]] = []

    @classmethod
    def get_instance(cls) -> "BookingEventLogger":
        """Get or create singleton instance."""
        if cls._instance is None:
            from booking_os.config import get_settings

            settings = get_settings()
            cls._instance = cls(log_dir=settings.event_log_dir, enabled=settings.events_enabled)
        return cls._instance

    def add_callback(self, callback: Callable[[BookingEvent], None]) -> None:
        """Add callback for real-time event monitoring."""
        self._callbacks.append(callback)

    def emit(self, event: BookingEvent) -> None:
        if not self.enabled:
            return
        try:
            with open(self.log_file, "a") as f:
                f.write(event.model_dump_json() + "\n")
        except OSError as e:
            logger.warning(f"Failed to write booking event: {e}")

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Booking event callback failed: {e}")

    def log(self, event_type: EventType, **fields: Any) -> None:
        metadata = fields.pop("metadata", {})
        self.emit(BookingEvent(event_type=event_type, metadata=metadata, **fields))

    @contextmanager
    def operation(self, name: str, **fields: Any) -> Iterator[BookingEvent]:
        """Time an operation and record its outcome.

        Usage:
            with events.operation("complete", appointment_id=appt_id) as event:
                ...
                event.metadata["ledger_written"] = True
        """
        start = time.perf_counter()
        event = BookingEvent(event_type=EventType.OPERATION, **fields)
        event.metadata["operation"] = name
        try:
            yield event
        except Exception as e:
            event.error_type = type(e).__name__
            event.error_message = str(e)[:200]
            raise
        finally:
            event.duration_ms = (time.perf_counter() - start) * 1000
            self.emit(event)


def get_event_logger() -> BookingEventLogger:
    """Get the global booking event logger."""
    return BookingEventLogger.get_instance()
