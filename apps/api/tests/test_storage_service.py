from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable, Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import UserProfile
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.services.storage import StorageClient, StorageError, set_storage_client


USER_ID = uuid.uuid4()
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _client(handler: Callable[[httpx.Request], httpx.Response], requests: list[httpx.Request]) -> StorageClient:
    def recording_handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return StorageClient("https://project.test", "anon-key", transport=httpx.MockTransport(recording_handler))


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    set_storage_client(None)
    yield
    set_storage_client(None)
    get_settings.cache_clear()


def test_upload_posts_bytes_and_returns_public_url() -> None:
    requests: list[httpx.Request] = []
    client = _client(lambda request: httpx.Response(200, json={"Key": "logos/acme/logo.png"}), requests)

    stored = asyncio.run(
        client.upload("logos", "acme/logo.png", PNG_BYTES, content_type="image/png", access_token="access-1")
    )

    assert stored.path == "acme/logo.png"
    assert stored.url == "https://project.test/storage/v1/object/public/logos/acme/logo.png"
    request = requests[0]
    assert request.method == "POST"
    assert request.url.path == "/storage/v1/object/logos/acme/logo.png"
    assert request.headers["authorization"] == "Bearer access-1"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["content-type"] == "image/png"
    assert request.headers["x-upsert"] == "false"
    assert request.content == PNG_BYTES


def test_remove_sign_and_list_use_bucket_endpoints() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/storage/v1/object/sign/"):
            return httpx.Response(200, json={"signedURL": "/object/sign/docs/a.pdf?token=t"})
        if request.url.path == "/storage/v1/object/list/docs":
            return httpx.Response(200, json=[{"name": "a.pdf"}])
        return httpx.Response(200, json=[{"name": "a.pdf"}])

    client = _client(handler, requests)

    asyncio.run(client.remove("docs", ["/a.pdf"]))
    signed = asyncio.run(client.signed_url("docs", "a.pdf", expires_in=60))
    listed = asyncio.run(client.list_files("docs", "reports"))

    assert requests[0].method == "DELETE"
    assert requests[0].url.path == "/storage/v1/object/docs"
    assert json.loads(requests[0].content) == {"prefixes": ["a.pdf"]}
    assert requests[0].headers["authorization"] == "Bearer anon-key"
    assert json.loads(requests[1].content) == {"expiresIn": 60}
    assert signed == "https://project.test/storage/v1/object/sign/docs/a.pdf?token=t"
    assert json.loads(requests[2].content)["prefix"] == "reports"
    assert listed == [{"name": "a.pdf"}]


def test_rejections_raise_storage_error() -> None:
    client = _client(lambda request: httpx.Response(403, json={"message": "new row violates policy"}), [])

    with pytest.raises(StorageError) as exc_info:
        asyncio.run(client.upload("avatars", "x.png", PNG_BYTES, content_type="image/png"))

    assert exc_info.value.status_code == 403
    assert exc_info.value.message == "new row violates policy"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add(UserProfile(id=USER_ID, email="jane@example.com", full_name="Jane"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(id=USER_ID, email="jane@example.com")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_avatar_upload_stores_file_and_updates_profile(client: TestClient) -> None:
    requests: list[httpx.Request] = []
    stored_key = f"avatars/{USER_ID}/avatar.png"
    set_storage_client(_client(lambda request: httpx.Response(200, json={"Key": stored_key}), requests))
    client.cookies.set("sb-access-token", "access-1")

    response = client.post("/api/profile/avatar", files={"avatar": ("me.png", PNG_BYTES, "image/png")})

    assert response.status_code == 200
    expected_url = f"https://project.test/storage/v1/object/public/avatars/{USER_ID}/avatar.png"
    assert response.json()["data"]["avatarUrl"] == expected_url
    assert requests[0].url.path == f"/storage/v1/object/avatars/{USER_ID}/avatar.png"
    assert requests[0].headers["x-upsert"] == "true"
    assert requests[0].headers["authorization"] == "Bearer access-1"


def test_avatar_upload_validates_file_before_calling_storage(client: TestClient) -> None:
    requests: list[httpx.Request] = []
    set_storage_client(_client(lambda request: httpx.Response(200, json={}), requests))
    client.cookies.set("sb-access-token", "access-1")

    wrong_type = client.post("/api/profile/avatar", files={"avatar": ("me.txt", b"hello", "text/plain")})
    missing = client.post("/api/profile/avatar", data={"note": "no file"})

    assert wrong_type.status_code == 422
    assert wrong_type.json()["errors"] == {"avatar": ["File must be a PNG, JPEG, WebP or GIF image"]}
    assert missing.json()["errors"] == {"avatar": ["File is required"]}
    assert requests == []


def test_avatar_upload_failure_leaves_profile_untouched(client: TestClient, db_session: Session) -> None:
    set_storage_client(_client(lambda request: httpx.Response(500, json={"message": "down"}), []))
    client.cookies.set("sb-access-token", "access-1")

    response = client.post("/api/profile/avatar", files={"avatar": ("me.png", PNG_BYTES, "image/png")})

    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "Failed to upload file. Please try again."}
    profile = db_session.get(UserProfile, USER_ID)
    db_session.refresh(profile)
    assert profile.avatar_url is None


def test_avatar_upload_requires_session(client: TestClient) -> None:
    response = client.post("/api/profile/avatar", files={"avatar": ("me.png", PNG_BYTES, "image/png")})

    assert response.status_code == 401
