from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import UserProfile
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def users(db_session: Session) -> dict[str, AuthUser]:
    member = AuthUser(id=uuid.uuid4(), email="member@example.com")
    admin = AuthUser(id=uuid.uuid4(), email="admin@example.com")
    db_session.add_all(
        [
            UserProfile(id=member.id, email=member.email, full_name="Member"),
            UserProfile(id=admin.id, email=admin.email, full_name="Admin", role="admin"),
        ]
    )
    db_session.commit()
    return {"member": member, "admin": admin, "stranger": AuthUser(id=uuid.uuid4(), email="new@example.com")}


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, AuthUser],
) -> Generator[tuple[TestClient, Callable[[str | None], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state: dict[str, str | None] = {"current": "member"}

    def override_get_current_user() -> AuthUser | None:
        name = state["current"]
        return users[name] if name is not None else None

    def set_actor(name: str | None) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


class _UnavailableSession:
    def execute(self, *args: object, **kwargs: object) -> None:
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))


def test_health_reports_connected_database(client: tuple[TestClient, Callable[[str | None], None]]) -> None:
    test_client, _ = client

    for path in ("/health", "/api/health"):
        response = test_client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["responseTime"].endswith("ms")


def test_health_reports_unavailable_database(client: tuple[TestClient, Callable[[str | None], None]]) -> None:
    test_client, _ = client

    def override_get_db() -> Generator[_UnavailableSession, None, None]:
        yield _UnavailableSession()

    app.dependency_overrides[get_db] = override_get_db
    response = test_client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert response.json()["database"] == "disconnected"


def test_me_returns_identity_and_profile(client: tuple[TestClient, Callable[[str | None], None]]) -> None:
    test_client, set_actor = client

    response = test_client.get("/api/me")
    assert response.status_code == 200
    body = response.json()
    assert body["email"] == "member@example.com"
    assert body["profile"]["fullName"] == "Member"
    assert body["profile"]["role"] == "user"

    set_actor("stranger")
    assert test_client.get("/api/me").json()["profile"] is None

    set_actor(None)
    anonymous = test_client.get("/api/me")
    assert anonymous.status_code == 401
    assert anonymous.json()["code"] == "UNAUTHENTICATED"


def test_metrics_endpoint_is_hidden_unless_enabled(
    client: tuple[TestClient, Callable[[str | None], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, set_actor = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    set_actor("admin")

    assert test_client.get("/metrics").status_code == 404


def test_metrics_endpoint_requires_admin_role(
    client: tuple[TestClient, Callable[[str | None], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, set_actor = client
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()

    test_client.post("/api/contacts", json={"firstName": "", "lastName": "Doe", "email": "doe@example.com"})

    member = test_client.get("/metrics")
    assert member.status_code == 403
    assert member.json()["code"] == "UNAUTHORIZED"

    set_actor("admin")
    admin = test_client.get("/metrics")
    assert admin.status_code == 200
    assert admin.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in admin.text
    assert 'crm_mutations_total{entity="crm.contact",action="create",outcome="invalid"}' in admin.text
