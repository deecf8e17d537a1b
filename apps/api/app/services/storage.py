from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any
from urllib.parse import quote

import httpx

from app.core.auth import provider_error_message
from app.core.config import get_settings


logger = logging.getLogger("app.services.storage")


class StorageError(Exception):
    """Raised when the storage API is unreachable or rejects a call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class StoredFile:
    path: str
    url: str


def _object_path(path: str) -> str:
    return quote(path.lstrip("/"), safe="/")


class StorageClient:
    """Client for a Supabase-compatible storage REST API.

    Calls made with the caller's access token are subject to the bucket's
    row level policies; without one the project key alone is sent.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/storage/v1"
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
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        request_headers = {"apikey": self.api_key, "Authorization": f"Bearer {access_token or self.api_key}"}
        request_headers.update(headers or {})
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, headers=request_headers, json=json, content=content)
        except httpx.HTTPError as exc:
            raise StorageError(f"storage request failed: {exc}") from exc
        if response.status_code >= 400:
            raise StorageError(provider_error_message(response), response.status_code)
        return response

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/object/public/{bucket}/{_object_path(path)}"

    async def upload(
        self,
        bucket: str,
        path: str,
        content: bytes,
        *,
        content_type: str | None = None,
        upsert: bool = False,
        access_token: str | None = None,
    ) -> StoredFile:
        response = await self._request(
            "POST",
            f"/object/{bucket}/{_object_path(path)}",
            access_token=access_token,
            content=content,
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "true" if upsert else "false",
            },
        )
        body = response.json()
        stored_path = path.lstrip("/")
        key = body.get("Key") if isinstance(body, dict) else None
        if isinstance(key, str) and key.startswith(f"{bucket}/"):
            stored_path = key[len(bucket) + 1 :]
        logger.info("storage.uploaded", extra={"target": f"{bucket}/{stored_path}"})
        return StoredFile(path=stored_path, url=self.public_url(bucket, stored_path))

    async def remove(self, bucket: str, paths: list[str], *, access_token: str | None = None) -> None:
        await self._request(
            "DELETE",
            f"/object/{bucket}",
            access_token=access_token,
            json={"prefixes": [path.lstrip("/") for path in paths]},
        )
        logger.info("storage.removed", extra={"target": bucket, "entity_id": ",".join(paths)})

    async def signed_url(
        self,
        bucket: str,
        path: str,
        expires_in: int = 3600,
        *,
        access_token: str | None = None,
    ) -> str:
        response = await self._request(
            "POST",
            f"/object/sign/{bucket}/{_object_path(path)}",
            access_token=access_token,
            json={"expiresIn": expires_in},
        )
        body = response.json()
        signed = body.get("signedURL") if isinstance(body, dict) else None
        if not isinstance(signed, str) or not signed:
            raise StorageError("storage returned no signed URL", response.status_code)
        return f"{self.base_url}{signed}" if signed.startswith("/") else signed

    async def list_files(
        self,
        bucket: str,
        folder: str | None = None,
        *,
        limit: int = 100,
        access_token: str | None = None,
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            f"/object/list/{bucket}",
            access_token=access_token,
            json={
                "prefix": folder or "",
                "limit": limit,
                "offset": 0,
                "sortBy": {"column": "name", "order": "asc"},
            },
        )
        body = response.json()
        return body if isinstance(body, list) else []


_STORAGE_CLIENT: StorageClient | None = None
_STORAGE_CLIENT_LOCK = Lock()


def get_storage_client() -> StorageClient:
    """Storage client for the hosted project, built from settings on first use."""

    global _STORAGE_CLIENT
    with _STORAGE_CLIENT_LOCK:
        if _STORAGE_CLIENT is None:
            settings = get_settings()
            _STORAGE_CLIENT = StorageClient(
                settings.auth_url,
                settings.auth_anon_key,
                timeout=settings.storage_timeout_seconds,
            )
        return _STORAGE_CLIENT


def set_storage_client(client: StorageClient | None) -> None:
    global _STORAGE_CLIENT
    with _STORAGE_CLIENT_LOCK:
        _STORAGE_CLIENT = client
