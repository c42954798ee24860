"""FastAPI application for BookingOS."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking_os import __version__
from booking_os.api.errors import register_exception_handlers
from booking_os.api.middleware import APIKeyMiddleware, RequestLoggingMiddleware
from booking_os.api.routes import appointments, health, public_booking
from booking_os.config import get_settings
from booking_os.services import BookingServices, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting BookingOS API")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(get_settings())

    services: BookingServices = app.state.services
    if services.dispatcher is not None:
        await services.dispatcher.start()

    logger.info("BookingOS API started successfully")

    yield

    logger.info("Shutting down BookingOS API")
    if services.dispatcher is not None:
        await services.dispatcher.stop(drain=True)
    close = getattr(services.orchestrator.payment_verifier, "close", None)
    if close is not None:
        await close()


def create_app(services: Optional[BookingServices] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``services`` lets callers (tests, embedding apps) supply a pre-wired
    engine; otherwise one is built from settings at startup.
    """
    settings = get_settings()

    app = FastAPI(
        title="BookingOS API",
        description="Appointment scheduling and booking engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    if settings.api_key:
        app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)

    app.include_router(health.router, tags=["health"])
    app.include_router(appointments.router, prefix="/api/v1", tags=["appointments"])
    app.include_router(public_booking.router, prefix="/api/v1", tags=["public"])

    register_exception_handlers(app, debug=settings.debug_mode)

    return app
