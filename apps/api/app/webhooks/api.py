from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.errors import error_response
from app.metrics import observe_webhook_event
from app.webhooks.stripe import WebhookSignatureError, dispatch_event, verify_signature


logger = logging.getLogger("app.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request) -> JSONResponse:
    signature = request.headers.get("stripe-signature")
    if not signature:
        return error_response(status.HTTP_400_BAD_REQUEST, "MISSING_SIGNATURE", "Missing stripe-signature header")

    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.warning("webhook.not_configured", extra={"event_type": "stripe"})
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "WEBHOOK_NOT_CONFIGURED",
            "Stripe webhook secret is not configured",
        )

    payload = await request.body()
    try:
        verify_signature(
            payload,
            signature,
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
    except WebhookSignatureError as exc:
        observe_webhook_event("unverified", "rejected")
        logger.warning("webhook.signature_invalid", extra={"error": str(exc)})
        return error_response(status.HTTP_400_BAD_REQUEST, "INVALID_SIGNATURE", "Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        return error_response(status.HTTP_400_BAD_REQUEST, "INVALID_PAYLOAD", "Invalid payload")
    if not isinstance(event, dict):
        return error_response(status.HTTP_400_BAD_REQUEST, "INVALID_PAYLOAD", "Invalid payload")

    try:
        dispatch_event(event)
    except Exception as exc:
        logger.exception("webhook.processing_failed", extra={"event_type": event.get("type"), "error": str(exc)})
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "WEBHOOK_PROCESSING_FAILED",
            "Webhook processing failed",
        )

    return JSONResponse(content={"received": True})
