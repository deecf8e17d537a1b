from __future__ import annotations

import asyncio
import json
from collections.abc import Generator

import httpx
import pytest

from app.core.config import get_settings
from app.services.email import (
    EmailDeliveryError,
    EmailMessage,
    ResendClient,
    get_email_client,
    send_password_reset_email,
    send_welcome_email,
    set_email_client,
)


@pytest.fixture(autouse=True)
def reset_client(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    get_settings.cache_clear()
    set_email_client(None)
    yield
    set_email_client(None)
    get_settings.cache_clear()


def _client(handler, requests: list[httpx.Request]) -> ResendClient:  # type: ignore[no-untyped-def]
    def recording_handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return ResendClient(
        "re_test_key",
        base_url="https://mail.test",
        default_sender="crm@example.com",
        transport=httpx.MockTransport(recording_handler),
    )


def test_client_posts_message_with_bearer_key() -> None:
    requests: list[httpx.Request] = []
    client = _client(lambda request: httpx.Response(200, json={"id": "email_1"}), requests)

    message_id = asyncio.run(
        client.send(EmailMessage(to=["a@example.com"], subject="Hi", html="<p>Hi</p>", text="Hi"))
    )

    assert message_id == "email_1"
    assert requests[0].url == "https://mail.test/emails"
    assert requests[0].headers["authorization"] == "Bearer re_test_key"
    assert json.loads(requests[0].content) == {
        "from": "crm@example.com",
        "to": ["a@example.com"],
        "subject": "Hi",
        "html": "<p>Hi</p>",
        "text": "Hi",
    }


def test_client_raises_on_rejection() -> None:
    client = _client(lambda request: httpx.Response(422, json={"message": "bad sender"}), [])

    with pytest.raises(EmailDeliveryError):
        asyncio.run(client.send(EmailMessage(to=["a@example.com"], subject="Hi", html="<p>Hi</p>")))


def test_welcome_email_escapes_name() -> None:
    requests: list[httpx.Request] = []
    set_email_client(_client(lambda request: httpx.Response(200, json={"id": "email_2"}), requests))

    assert asyncio.run(send_welcome_email("jane@example.com", "<Jane>")) is True

    body = json.loads(requests[0].content)
    assert body["subject"] == "Welcome to EST"
    assert "&lt;Jane&gt;" in body["html"]
    assert "<Jane>" not in body["html"]


def test_delivery_failures_are_reported_not_raised() -> None:
    set_email_client(_client(lambda request: httpx.Response(500, text="boom"), []))

    assert asyncio.run(send_password_reset_email("jane@example.com", "https://app.test/reset?x=1")) is False


def test_sending_is_skipped_without_api_key() -> None:
    assert get_email_client() is None
    assert asyncio.run(send_welcome_email("jane@example.com", "Jane")) is False
