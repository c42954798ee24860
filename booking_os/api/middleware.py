"""Request tracing and API key enforcement."""

import hmac
import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Reachable without an API key: health checks, docs and the customer-facing booking page.
PUBLIC_PREFIXES = ("/health", "/docs", "/openapi.json", "/api/v1/public/")

REQUEST_ID_HEADER = "X-Request-ID"


def _client(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and log its outcome and latency.

    An incoming ``X-Request-ID`` is kept so traces line up with the caller's.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed = time.perf_counter() - started
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} "
            f"in {elapsed * 1000:.1f}ms client={_client(request)}"
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.3f}"
        return response


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Require the shared API key on staff-facing routes.

    The key may be sent as ``Authorization: Bearer <key>`` or ``X-API-Key``.
    """

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    @staticmethod
    def _presented_key(request: Request) -> Optional[str]:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth.removeprefix("Bearer ")
        return request.headers.get("X-API-Key")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(PUBLIC_PREFIXES):
            return await call_next(request)

        presented = self._presented_key(request)
        if presented and hmac.compare_digest(presented, self.api_key):
            return await call_next(request)

        logger.warning(f"Rejected {request.method} {request.url.path} without a valid API key client={_client(request)}")
        return JSONResponse(
            status_code=401,
            content={"error": "Unauthorized", "detail": "Invalid or missing API key"},
        )
