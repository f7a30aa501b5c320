from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from callgenie.context import get_correlation_id
from callgenie.core.auth import ANONYMOUS_SUBJECT, bearer_token, decode_token
from callgenie.core.config import get_settings


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[str, _BucketState] = {}

    def take(self, user_id: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)

        with self._lock:
            current = self._buckets.get(user_id)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[user_id] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class OutboundCallRateLimitMiddleware(BaseHTTPMiddleware):
    """Throttles requests that dial out through the voice provider, per user."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        if request.method.upper() != "POST" or not request.url.path.startswith("/api/calls"):
            return await call_next(request)

        user_id = _resolve_user_id(request)
        # Anonymous requests get 401 from the router.
        if user_id == ANONYMOUS_SUBJECT:
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            user_id=user_id,
            capacity=settings.rate_limit_call_requests_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "success": False,
                "message": "Too many call requests",
                "data": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_user_id(request: Request) -> str:
    claims = decode_token(bearer_token(request))
    if not claims or claims.get("sub") is None:
        return ANONYMOUS_SUBJECT
    return str(claims["sub"])


def reset_rate_limiter() -> None:
    _limiter.clear()
