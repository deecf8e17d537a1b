from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.config import get_settings
from app.core.errors import RateLimitError, error_response


AUTH_ACTION_PATHS = {
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/forgot-password",
    "/api/auth/reset-password",
}
MUTATION_PREFIXES = ("/api/contacts", "/api/organizations", "/api/deals", "/api/profile")


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, client_key: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (client_key, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

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


def resolve_route_group(method: str, path: str) -> str | None:
    if method == "POST" and path in AUTH_ACTION_PATHS:
        return "auth"
    if method in {"POST", "PATCH", "PUT", "DELETE"} and any(
        path == prefix or path.startswith(prefix + "/") for prefix in MUTATION_PREFIXES
    ):
        return "mutations"
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        route_group = resolve_route_group(request.method.upper(), request.url.path)
        if route_group is None:
            return await call_next(request)

        capacity = (
            settings.rate_limit_auth_per_minute
            if route_group == "auth"
            else settings.rate_limit_mutations_per_minute
        )
        allowed, retry_after = _limiter.take(
            client_key=_resolve_client_key(request),
            route_group=route_group,
            capacity=capacity,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        exc = RateLimitError()
        return error_response(
            exc.status_code,
            exc.code,
            exc.message,
            headers={"Retry-After": str(retry_after)},
        )


def _resolve_client_key(request: Request) -> str:
    # Unverified claims only pick a bucket; identity always comes from the provider.
    token = request.cookies.get(get_settings().auth_access_cookie)
    if token:
        try:
            claims: dict[str, Any] = jwt.get_unverified_claims(token)
        except JWTError:
            claims = {}
        subject = claims.get("sub")
        if subject:
            return f"user:{subject}"

    context = getattr(request.state, "context", None)
    client_ip = getattr(context, "client_ip", None)
    if client_ip is None and request.client is not None:
        client_ip = request.client.host
    return f"ip:{client_ip}" if client_ip else "anonymous"


def reset_rate_limiter() -> None:
    _limiter.clear()
