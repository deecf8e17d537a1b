from __future__ import annotations

import re
import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    client_ip: str | None
    user_agent: str | None


def _client_ip(request: Request) -> str | None:
    # First hop of X-Forwarded-For is the original client behind the proxy.
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client is not None else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request_id = request.headers.get("x-request-id") or ""
        if not _REQUEST_ID_RE.match(request_id):
            request_id = str(uuid.uuid4())

        request.state.context = RequestContext(
            request_id=request_id,
            correlation_id=correlation_id,
            client_ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response
