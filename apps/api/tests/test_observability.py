from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.context import reset_correlation_id, set_correlation_id, set_user_id
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.events import InternalEvent, event_bus
from app.crm.models import UserProfile
from app.logging import JsonLogFormatter, RequestContextFilter
from app.main import app
from app.metrics import resolve_http_path_label
from app.middleware.correlation_id import resolve_correlation_id
from app.middleware.rate_limit import reset_rate_limiter


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
    session.add(UserProfile(id=USER_ID, email="trace@example.com"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(id=USER_ID, email="trace@example.com")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_correlation_id_is_echoed_or_generated(client: TestClient) -> None:
    echoed = client.get("/api/health", headers={"X-Correlation-Id": "abc-123"})
    generated = client.get("/api/health", headers={"X-Correlation-Id": "has spaces!"})

    assert echoed.headers["x-correlation-id"] == "abc-123"
    assert generated.headers["x-correlation-id"] != "has spaces!"
    assert str(uuid.UUID(generated.headers["x-correlation-id"])) == generated.headers["x-correlation-id"]
    assert echoed.headers["x-request-id"]


def test_resolve_correlation_id_limits_length() -> None:
    assert resolve_correlation_id("a" * 128) == "a" * 128
    assert resolve_correlation_id("a" * 129) != "a" * 129
    assert resolve_correlation_id(None)


def test_mutation_side_effects_carry_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/organizations",
        json={"name": "Traced"},
        headers={"X-Correlation-Id": "corr-org-1"},
    )
    assert response.status_code == 201
    organization_id = response.json()["data"]["id"]

    entries = audit.entries_for("crm.organization", organization_id)
    assert entries[0]["correlation_id"] == "corr-org-1"
    created = [event for event in events.published_events if event["event_type"] == "crm.organization.created"]
    assert created[0]["correlation_id"] == "corr-org-1"
    assert created[0]["payload"] == {"id": organization_id}


def test_error_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.get(f"/api/deals/{uuid.uuid4()}", headers={"X-Correlation-Id": "corr-missing"})

    assert response.status_code == 404
    assert response.json() == {
        "code": "NOT_FOUND",
        "message": "Deal not found",
        "details": None,
        "correlation_id": "corr-missing",
    }


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    path = f"/api/contacts/{uuid.uuid4()}"

    response = client.get(path, headers={"X-Correlation-Id": "log-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"
    ]
    assert any(
        getattr(record, "correlation_id", None) == "log-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/contacts/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_json_formatter_emits_context_and_known_fields() -> None:
    token = set_correlation_id("fmt-1")
    set_user_id("user-9")
    try:
        record = logging.makeLogRecord(
            {
                "name": "app.crm.actions",
                "levelno": logging.INFO,
                "levelname": "INFO",
                "msg": "crm.mutation",
                "entity": "crm.contact",
                "action": "create",
                "secret": "not logged",
            }
        )
        RequestContextFilter().filter(record)
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_correlation_id(token)
        set_user_id(None)

    assert payload["msg"] == "crm.mutation"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["user_id"] == "user-9"
    assert payload["fields"] == {"entity": "crm.contact", "action": "create"}


def test_path_labels_collapse_identifiers() -> None:
    class _Request:
        def __init__(self, path: str) -> None:
            self.scope: dict = {}
            self.url = type("Url", (), {"path": path})()

    label = resolve_http_path_label(_Request(f"/api/deals/{uuid.uuid4()}"))  # type: ignore[arg-type]
    assert label == "/api/deals/{id}"


def test_event_bus_delivers_to_subscribers() -> None:
    received: list[InternalEvent] = []

    def handler(event: InternalEvent) -> None:
        received.append(event)

    event_bus.subscribe("crm.deal.updated", handler)
    try:
        events.publish({"event_type": "crm.deal.updated", "payload": {"id": "d-1"}})
    finally:
        event_bus.unsubscribe("crm.deal.updated", handler)

    assert [event.name for event in received] == ["crm.deal.updated"]
    assert received[0].payload["payload"] == {"id": "d-1"}


def test_recent_event_and_audit_buffers_are_bounded() -> None:
    for index in range(events.RECENT_EVENTS_LIMIT + 25):
        events.publish({"event_type": "crm.contact.updated", "payload": {"id": str(index)}})
    for index in range(audit.RECENT_ENTRIES_LIMIT + 25):
        audit.record(actor_user_id="u-1", entity_type="crm.contact", entity_id=str(index), action="update")

    assert len(events.published_events) == events.RECENT_EVENTS_LIMIT
    assert events.published_events[-1]["payload"] == {"id": str(events.RECENT_EVENTS_LIMIT + 24)}
    assert len(audit.audit_entries) == audit.RECENT_ENTRIES_LIMIT
    assert audit.entries_for("crm.contact", "0") == []


def test_audit_entries_are_published_on_the_bus() -> None:
    received: list[InternalEvent] = []

    def handler(event: InternalEvent) -> None:
        received.append(event)

    event_bus.subscribe("audit.recorded", handler)
    try:
        entry = audit.record(actor_user_id="u-1", entity_type="crm.deal", entity_id="d-1", action="delete")
    finally:
        event_bus.unsubscribe("audit.recorded", handler)

    assert [event.payload for event in received] == [entry]
