from __future__ import annotations

import hashlib
import hmac
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from app import events
from app.metrics import observe_webhook_event


logger = logging.getLogger("app.webhooks.stripe")

# Payment provider event type -> internal billing event type.
EVENT_ROUTES: dict[str, str] = {
    "customer.subscription.created": "billing.subscription.created",
    "customer.subscription.updated": "billing.subscription.updated",
    "customer.subscription.deleted": "billing.subscription.canceled",
    "invoice.payment_failed": "billing.payment_failed",
}


class WebhookSignatureError(Exception):
    pass


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed timestamp in signature header") from None
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Unable to extract timestamp and signatures from header")
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    header: str,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Raise `WebhookSignatureError` unless one `v1` signature matches the raw body."""

    timestamp, signatures = parse_signature_header(header)
    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("No signatures found matching the expected signature for payload")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and timestamp < current - tolerance_seconds:
        raise WebhookSignatureError("Timestamp outside the tolerance zone")


def dispatch_event(event: dict[str, Any]) -> str | None:
    """Publish a verified event as an internal billing event; unknown types are only logged."""

    event_type = str(event.get("type") or "")
    internal_type = EVENT_ROUTES.get(event_type)
    if internal_type is None:
        observe_webhook_event(event_type or "unknown", "ignored")
        logger.info("webhook.unhandled", extra={"event_type": event_type})
        return None

    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    obj = obj if isinstance(obj, dict) else {}
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": internal_type,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "payload": {
                "provider_event_id": event.get("id"),
                "object_id": obj.get("id"),
                "customer": obj.get("customer"),
                "status": obj.get("status"),
            },
        }
    )
    observe_webhook_event(event_type, "dispatched")
    logger.info("webhook.dispatched", extra={"event_type": event_type, "target": internal_type})
    return internal_type
