from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

import httpx
from starlette.requests import Request
from starlette.responses import Response

from app.context import set_user_id
from app.core.config import get_settings
from app.metrics import observe_session_check


logger = logging.getLogger("app.auth")


class AuthProviderError(Exception):
    """Raised when the identity provider is unreachable or rejects a call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class AuthUser:
    id: uuid.UUID
    email: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    user: AuthUser
    expires_in: int | None = None


@dataclass
class SessionResult:
    user: AuthUser | None
    refreshed: AuthSession | None = None
    # Set when cookies were presented but could not be turned into a session.
    expired: bool = False


def _parse_user(payload: Any) -> AuthUser | None:
    if not isinstance(payload, dict):
        return None
    try:
        user_id = uuid.UUID(str(payload.get("id")))
    except ValueError:
        return None
    metadata = payload.get("user_metadata")
    return AuthUser(
        id=user_id,
        email=str(payload.get("email") or ""),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def _parse_session(payload: Any) -> AuthSession | None:
    if not isinstance(payload, dict):
        return None
    access_token = payload.get("access_token")
    refresh_token = payload.get("refresh_token")
    user = _parse_user(payload.get("user"))
    if not access_token or not refresh_token or user is None:
        return None
    expires_in = payload.get("expires_in")
    return AuthSession(
        access_token=str(access_token),
        refresh_token=str(refresh_token),
        user=user,
        expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
    )


def provider_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


class AuthProviderClient:
    """Client for a GoTrue-compatible identity provider REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/auth/v1"
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        headers = {"apikey": self.api_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                return await client.request(method, path, headers=headers, json=json, params=params)
        except httpx.HTTPError as exc:
            raise AuthProviderError(f"identity provider request failed: {exc}") from exc

    async def get_user(self, access_token: str) -> AuthUser | None:
        response = await self._request("GET", "/user", access_token=access_token)
        if response.status_code != 200:
            return None
        return _parse_user(response.json())

    async def refresh_session(self, refresh_token: str) -> AuthSession | None:
        response = await self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if response.status_code != 200:
            return None
        return _parse_session(response.json())

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        response = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.status_code != 200:
            raise AuthProviderError(provider_error_message(response), response.status_code)
        session = _parse_session(response.json())
        if session is None:
            raise AuthProviderError("identity provider returned no session", response.status_code)
        return session

    async def sign_up(self, email: str, password: str, full_name: str) -> tuple[AuthUser, AuthSession | None]:
        response = await self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": {"full_name": full_name}},
        )
        if response.status_code not in (200, 201):
            raise AuthProviderError(provider_error_message(response), response.status_code)

        body = response.json()
        # Auto-confirmed projects answer with a session, others with the bare user.
        session = _parse_session(body)
        if session is not None:
            return session.user, session
        user = _parse_user(body)
        if user is None:
            raise AuthProviderError("identity provider returned no user", response.status_code)
        return user, None

    async def sign_out(self, access_token: str) -> None:
        response = await self._request("POST", "/logout", access_token=access_token)
        if response.status_code >= 400 and response.status_code != 401:
            raise AuthProviderError(provider_error_message(response), response.status_code)

    async def send_password_reset(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        response = await self._request("POST", "/recover", json={"email": email}, params=params)
        if response.status_code >= 400:
            raise AuthProviderError(provider_error_message(response), response.status_code)

    async def update_password(self, access_token: str, password: str) -> AuthUser:
        response = await self._request("PUT", "/user", access_token=access_token, json={"password": password})
        if response.status_code != 200:
            raise AuthProviderError(provider_error_message(response), response.status_code)
        user = _parse_user(response.json())
        if user is None:
            raise AuthProviderError("identity provider returned no user", response.status_code)
        return user


_AUTH_PROVIDER: AuthProviderClient | None = None
_AUTH_PROVIDER_LOCK = Lock()


def get_auth_provider() -> AuthProviderClient:
    """Get the active identity provider client, building it from settings on first use."""

    global _AUTH_PROVIDER
    with _AUTH_PROVIDER_LOCK:
        if _AUTH_PROVIDER is None:
            settings = get_settings()
            _AUTH_PROVIDER = AuthProviderClient(
                settings.auth_url,
                settings.auth_anon_key,
                timeout=settings.auth_timeout_seconds,
            )
        return _AUTH_PROVIDER


def set_auth_provider(provider: AuthProviderClient | None) -> None:
    """Set the active identity provider client; `None` rebuilds it from settings."""

    global _AUTH_PROVIDER
    with _AUTH_PROVIDER_LOCK:
        _AUTH_PROVIDER = provider


class SessionValidator:
    """Exchanges session cookies for a verified identity.

    Tokens are never decoded locally; the identity provider is asked every
    time. Provider failures resolve to an unauthenticated result.
    """

    def __init__(self, provider: AuthProviderClient | None = None) -> None:
        self._provider = provider

    async def validate(self, cookies: Mapping[str, str]) -> SessionResult:
        settings = get_settings()
        access_token = cookies.get(settings.auth_access_cookie)
        refresh_token = cookies.get(settings.auth_refresh_cookie)
        if not access_token and not refresh_token:
            observe_session_check("anonymous")
            return SessionResult(user=None)

        provider = self._provider or get_auth_provider()
        try:
            if access_token:
                user = await provider.get_user(access_token)
                if user is not None:
                    observe_session_check("verified")
                    return SessionResult(user=user)

            if refresh_token:
                session = await provider.refresh_session(refresh_token)
                if session is not None:
                    observe_session_check("refreshed")
                    logger.info("auth.session.refreshed", extra={"outcome": "refreshed"})
                    return SessionResult(user=session.user, refreshed=session)
        except AuthProviderError as exc:
            observe_session_check("error")
            logger.warning("auth.session.provider_error", extra={"error": exc.message})
            return SessionResult(user=None)

        observe_session_check("rejected")
        logger.info("auth.session.rejected", extra={"outcome": "rejected"})
        return SessionResult(user=None, expired=True)


async def resolve_session(request: Request) -> SessionResult:
    """Validate the request's cookies once; later lookups in the same request reuse the result."""

    result = getattr(request.state, "session", None)
    if isinstance(result, SessionResult):
        return result
    result = await SessionValidator().validate(request.cookies)
    request.state.session = result
    if result.user is not None:
        set_user_id(str(result.user.id))
    return result


async def get_current_user(request: Request) -> AuthUser | None:
    result = await resolve_session(request)
    return result.user


def current_access_token(request: Request) -> str | None:
    """Access token for provider calls made on the caller's behalf, preferring a rotated one."""

    result = getattr(request.state, "session", None)
    if isinstance(result, SessionResult) and result.refreshed is not None:
        return result.refreshed.access_token
    return request.cookies.get(get_settings().auth_access_cookie)


def _cookie_options() -> dict[str, Any]:
    settings = get_settings()
    return {
        "max_age": settings.auth_cookie_max_age_seconds,
        "path": "/",
        "httponly": True,
        "secure": settings.auth_cookie_secure,
        "samesite": "lax",
    }


def apply_session_cookies(response: Response, session: AuthSession) -> None:
    settings = get_settings()
    options = _cookie_options()
    response.set_cookie(settings.auth_access_cookie, session.access_token, **options)
    response.set_cookie(settings.auth_refresh_cookie, session.refresh_token, **options)


def clear_session_cookies(response: Response) -> None:
    settings = get_settings()
    for name in (settings.auth_access_cookie, settings.auth_refresh_cookie):
        response.delete_cookie(name, path="/", secure=settings.auth_cookie_secure, httponly=True, samesite="lax")


def apply_session_result(response: Response, result: SessionResult | None) -> None:
    """Write rotated tokens back, or drop cookies that no longer resolve to a session."""

    if result is None:
        return
    if result.refreshed is not None:
        apply_session_cookies(response, result.refreshed)
    elif result.expired:
        clear_session_cookies(response)
