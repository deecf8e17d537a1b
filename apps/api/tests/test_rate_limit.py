from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import UserProfile
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter, resolve_route_group


USER_ID = uuid.uuid4()


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
    session.add(UserProfile(id=USER_ID, email="limited@example.com"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    monkeypatch.setenv("RATE_LIMIT_AUTH_PER_MINUTE", "2")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(id=USER_ID, email="limited@example.com")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_route_groups() -> None:
    assert resolve_route_group("POST", "/api/auth/login") == "auth"
    assert resolve_route_group("POST", "/api/auth/logout") is None
    assert resolve_route_group("PATCH", "/api/contacts/1") == "mutations"
    assert resolve_route_group("DELETE", "/api/deals/1") == "mutations"
    assert resolve_route_group("POST", "/api/contactsx") is None
    assert resolve_route_group("GET", "/api/contacts") is None


def test_mutating_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [
        client.post(
            "/api/organizations",
            json={"name": f"Rate Limit Organization {index}"},
            headers={"X-Correlation-Id": f"rate-{index}"},
        )
        for index in range(5)
    ]

    assert [response.status_code for response in responses] == [201, 201, 201, 429, 429]

    first_limited = responses[3]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] == "rate-3"
    assert int(first_limited.headers["Retry-After"]) >= 1


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    responses = [client.get("/api/organizations") for _ in range(10)]

    assert all(response.status_code == 200 for response in responses)


def test_auth_actions_have_their_own_budget(client: TestClient) -> None:
    for _ in range(2):
        client.post("/api/auth/forgot-password", json={"email": "not-an-email"})

    limited = client.post("/api/auth/forgot-password", json={"email": "not-an-email"})
    mutation = client.post("/api/organizations", json={"name": "Still allowed"})

    assert limited.status_code == 429
    assert mutation.status_code == 201


def test_buckets_are_keyed_by_session_subject(client: TestClient) -> None:
    first = jwt.encode({"sub": "user-a"}, "irrelevant", algorithm="HS256")
    second = jwt.encode({"sub": "user-b"}, "irrelevant", algorithm="HS256")

    client.cookies.set("sb-access-token", first)
    for index in range(3):
        assert client.post("/api/organizations", json={"name": f"A{index}"}).status_code == 201
    assert client.post("/api/organizations", json={"name": "A3"}).status_code == 429

    client.cookies.set("sb-access-token", second)
    assert client.post("/api/organizations", json={"name": "B0"}).status_code == 201
