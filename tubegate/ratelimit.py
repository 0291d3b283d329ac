import math
import time
from collections import deque
from collections.abc import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

RATE_LIMIT_HEADERS = ["RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset", "Retry-After"]
RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


class SlidingWindowLimiter:
    """Per-client request log over a sliding time window."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: dict[str, deque[float]] = {}

    def _prune(self, hits: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def hit(self, client: str) -> tuple[bool, int, int]:
        """Record a request. Returns (allowed, remaining, seconds until reset)."""
        now = self.clock()
        hits = self._hits.setdefault(client, deque())
        self._prune(hits, now)

        allowed = len(hits) < self.limit
        if allowed:
            hits.append(now)
        remaining = max(0, self.limit - len(hits))
        reset = math.ceil(hits[0] + self.window_seconds - now) if hits else math.ceil(self.window_seconds)

        if len(self._hits) > 10_000:
            self._forget_idle(now)
        return allowed, remaining, max(0, reset)

    def _forget_idle(self, now: float) -> None:
        for client in list(self._hits):
            hits = self._hits[client]
            self._prune(hits, now)
            if not hits:
                del self._hits[client]


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, limiter: SlidingWindowLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else "unknown"
        allowed, remaining, reset = self.limiter.hit(client_ip)
        headers = {
            "RateLimit-Limit": str(self.limiter.limit),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset": str(reset),
        }

        if not allowed:
            headers["Retry-After"] = str(reset)
            return JSONResponse(status_code=429, content={"error": RATE_LIMIT_MESSAGE}, headers=headers)

        response = await call_next(request)
        response.headers.update(headers)
        return response
