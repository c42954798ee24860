"""Translate booking errors into HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from booking_os.scheduling.errors import (
    AuthorizationError,
    BookingError,
    ConflictError,
    ExternalDependencyError,
    NotFoundError,
    StateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[BookingError], int] = {
    ValidationError: 422,
    ConflictError: 409,
    StateError: 409,
    NotFoundError: 404,
    AuthorizationError: 403,
    ExternalDependencyError: 502,
}


def _status_for(exc: BookingError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400


def register_exception_handlers(app: FastAPI, debug: bool = False) -> None:
    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        status_code = _status_for(exc)
        content: dict = {"error": type(exc).__name__, "detail": exc.message}
        if isinstance(exc, ValidationError):
            content["violations"] = exc.errors
        if isinstance(exc, ConflictError) and exc.conflicting_ids:
            content["conflicting_ids"] = exc.conflicting_ids
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if debug else None,
            },
        )
