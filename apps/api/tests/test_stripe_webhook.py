from __future__ import annotations

import json
import time
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from app import events
from app.core.config import get_settings
from app.main import app
from app.webhooks.stripe import WebhookSignatureError, compute_signature, parse_signature_header, verify_signature


SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", SECRET)
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


def _signed(payload: bytes, *, secret: str = SECRET, timestamp: int | None = None) -> dict[str, str]:
    stamp = int(time.time()) if timestamp is None else timestamp
    return {
        "stripe-signature": f"t={stamp},v1={compute_signature(payload, stamp, secret)}",
        "content-type": "application/json",
    }


def test_parse_signature_header_collects_every_v1_value() -> None:
    timestamp, signatures = parse_signature_header("t=1700000000,v1=aaa,v0=legacy,v1=bbb")

    assert timestamp == 1700000000
    assert signatures == ["aaa", "bbb"]

    with pytest.raises(WebhookSignatureError):
        parse_signature_header("v1=aaa")


def test_verify_signature_enforces_tolerance() -> None:
    payload = b'{"id": "evt_1"}'
    signature = compute_signature(payload, 1_000, SECRET)
    header = f"t=1000,v1={signature}"

    verify_signature(payload, header, SECRET, now=1_200)
    with pytest.raises(WebhookSignatureError):
        verify_signature(payload, header, SECRET, now=1_400)
    with pytest.raises(WebhookSignatureError):
        verify_signature(payload + b" ", header, SECRET, now=1_200)


def test_subscription_event_is_published_as_billing_event(client: TestClient) -> None:
    payload = json.dumps(
        {
            "id": "evt_1",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_1", "customer": "cus_1", "status": "canceled"}},
        }
    ).encode()

    response = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    published = [event for event in events.published_events if event["event_type"].startswith("billing.")]
    assert len(published) == 1
    assert published[0]["event_type"] == "billing.subscription.canceled"
    assert published[0]["payload"] == {
        "provider_event_id": "evt_1",
        "object_id": "sub_1",
        "customer": "cus_1",
        "status": "canceled",
    }


def test_unhandled_event_type_is_acknowledged(client: TestClient) -> None:
    payload = json.dumps({"id": "evt_2", "type": "charge.refunded", "data": {"object": {}}}).encode()

    response = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload))

    assert response.status_code == 200
    assert list(events.published_events) == []


def test_bad_signature_is_rejected(client: TestClient) -> None:
    payload = b'{"id": "evt_3", "type": "invoice.payment_failed"}'

    response = client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers=_signed(payload, secret="whsec_wrong"),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert response.json()["message"] == "Invalid signature"
    assert list(events.published_events) == []


def test_missing_signature_header(client: TestClient) -> None:
    response = client.post("/api/webhooks/stripe", content=b"{}")

    assert response.status_code == 400
    assert response.json()["code"] == "MISSING_SIGNATURE"


def test_unconfigured_secret_is_service_unavailable(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
    get_settings.cache_clear()
    payload = b"{}"

    response = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload))

    assert response.status_code == 503
    assert response.json()["code"] == "WEBHOOK_NOT_CONFIGURED"
