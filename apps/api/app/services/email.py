from __future__ import annotations

import html
import logging
from dataclasses import dataclass

import httpx

from app.core.config import get_settings
from app.metrics import observe_email


logger = logging.getLogger("app.services.email")


class EmailDeliveryError(Exception):
    pass


@dataclass
class EmailMessage:
    to: list[str]
    subject: str
    html: str
    text: str | None = None
    sender: str | None = None


class ResendClient:
    """Sends transactional mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.resend.com",
        default_sender: str = "onboarding@resend.dev",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_sender = default_sender
        self.timeout = timeout
        self.transport = transport

    async def send(self, message: EmailMessage) -> str | None:
        body: dict[str, object] = {
            "from": message.sender or self.default_sender,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            body["text"] = message.text

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    "/emails",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"email request failed: {exc}") from exc

        if response.status_code >= 400:
            raise EmailDeliveryError(f"email rejected with HTTP {response.status_code}: {response.text[:200]}")
        payload = response.json()
        return payload.get("id") if isinstance(payload, dict) else None


_EMAIL_CLIENT: ResendClient | None = None


def get_email_client() -> ResendClient | None:
    """Client built from settings, or `None` when no API key is configured."""

    if _EMAIL_CLIENT is not None:
        return _EMAIL_CLIENT
    settings = get_settings()
    if not settings.resend_api_key:
        return None
    return ResendClient(
        settings.resend_api_key,
        base_url=settings.resend_api_url,
        default_sender=settings.resend_from_email,
        timeout=settings.resend_timeout_seconds,
    )


def set_email_client(client: ResendClient | None) -> None:
    global _EMAIL_CLIENT
    _EMAIL_CLIENT = client


async def send_email(template: str, message: EmailMessage) -> bool:
    """Best effort: delivery problems are logged and reported as `False`."""

    client = get_email_client()
    if client is None:
        observe_email(template, "skipped")
        logger.info("email.skipped", extra={"action": template, "reason": "not_configured"})
        return False

    try:
        await client.send(message)
    except EmailDeliveryError as exc:
        observe_email(template, "failed")
        logger.warning("email.failed", extra={"action": template, "error": str(exc)})
        return False

    observe_email(template, "sent")
    logger.info("email.sent", extra={"action": template})
    return True


async def send_welcome_email(email: str, name: str) -> bool:
    safe_name = html.escape(name)
    return await send_email(
        "welcome",
        EmailMessage(
            to=[email],
            subject="Welcome to EST",
            html=(
                f"<h1>Welcome, {safe_name}!</h1>"
                "<p>Thank you for signing up for EST.</p>"
                "<p>Get started by logging into your dashboard.</p>"
            ),
            text=f"Welcome, {name}! Thank you for signing up for EST.",
        ),
    )


async def send_password_reset_email(email: str, reset_link: str) -> bool:
    safe_link = html.escape(reset_link, quote=True)
    return await send_email(
        "password_reset",
        EmailMessage(
            to=[email],
            subject="Reset Your Password",
            html=(
                "<h1>Password Reset Request</h1>"
                "<p>Click the link below to reset your password:</p>"
                f'<p><a href="{safe_link}">Reset Password</a></p>'
                "<p>This link will expire in 1 hour.</p>"
                "<p>If you didn't request this, please ignore this email.</p>"
            ),
            text=f"Reset your password by visiting: {reset_link}",
        ),
    )
