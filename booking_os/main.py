"""Process entry point for BookingOS."""

import logging
import sys
from typing import Optional

from booking_os.config import get_settings

# Libraries that log every query or HTTP exchange at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx", "httpcore")


def setup_logging(level: Optional[str] = None) -> None:
    """Send logs to stdout; ``level`` overrides the ``LOG_LEVEL`` setting."""
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))


def main():
    setup_logging()

    from booking_os.cli.commands import app

    app()


if __name__ == "__main__":
    main()
