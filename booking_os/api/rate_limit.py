"""Per-client request throttling for the public booking page."""

import time
from collections import defaultdict, deque

from fastapi import HTTPException, Request


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` per client IP in any ``window_seconds`` span.

    Used as a router-level dependency::

        limiter = SlidingWindowRateLimiter(max_requests=30)
        router = APIRouter(prefix="/public", dependencies=[Depends(limiter)])

    State is per process; behind several workers each one counts separately.
    """

    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: defaultdict[str, deque[float]] = defaultdict(deque)

    @staticmethod
    def client_ip(request: Request) -> str:
        # First hop of X-Forwarded-For is the original client behind a proxy.
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def reset(self) -> None:
        self._hits.clear()

    async def __call__(self, request: Request) -> None:
        ip = self.client_ip(request)
        now = time.monotonic()
        hits = self._hits[ip]
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()

        if len(hits) >= self.max_requests:
            wait = self.window_seconds - (now - hits[0])
            raise HTTPException(
                status_code=429,
                detail=f"Too many booking requests. Limit is {self.max_requests} per {self.window_seconds}s.",
                headers={"Retry-After": str(max(int(wait), 1))},
            )
        hits.append(now)
