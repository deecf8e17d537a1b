from __future__ import annotations

import logging
from collections.abc import Iterable
from urllib.parse import urlencode

from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.auth import apply_session_result, resolve_session
from app.core.config import get_settings
from app.metrics import observe_route_guard_decision


logger = logging.getLogger("app.route_guard")

PROTECTED = "protected"
AUTH_ONLY = "auth_only"
PUBLIC = "public"


def matches_prefix(path: str, prefix: str) -> bool:
    """Prefix match on path segment boundaries: `/deals` covers `/deals/1`, not `/dealsx`."""

    prefix = prefix.rstrip("/") or "/"
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


def classify_path(path: str, protected: Iterable[str], auth_only: Iterable[str]) -> str:
    if any(matches_prefix(path, prefix) for prefix in protected):
        return PROTECTED
    if any(matches_prefix(path, prefix) for prefix in auth_only):
        return AUTH_ONLY
    return PUBLIC


def safe_redirect_path(value: str | None, default: str) -> str:
    """Only same-site relative paths are followed after authentication."""

    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return default
    return value


class RouteGuardMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        route_class = classify_path(path, settings.protected_route_prefixes, settings.auth_route_prefixes)

        if route_class == PUBLIC:
            response = await call_next(request)
            # Endpoints that resolved a session may have rotated its tokens.
            apply_session_result(response, getattr(request.state, "session", None))
            return response

        session = await resolve_session(request)
        if route_class == PROTECTED and session.user is None:
            target = f"{settings.login_path}?{urlencode({'redirectTo': path})}"
            decision = "redirect_login"
        elif route_class == AUTH_ONLY and session.user is not None:
            target = safe_redirect_path(request.query_params.get("redirectTo"), settings.default_landing_path)
            decision = "redirect_landing"
        else:
            observe_route_guard_decision(route_class, "allow")
            response = await call_next(request)
            apply_session_result(response, session)
            return response

        observe_route_guard_decision(route_class, decision)
        logger.info("route_guard.redirect", extra={"path": path, "target": target, "reason": decision})
        redirect = RedirectResponse(target, status_code=307)
        apply_session_result(redirect, session)
        return redirect
