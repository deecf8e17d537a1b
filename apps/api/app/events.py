from __future__ import annotations

from collections import deque
from typing import Any

from app.context import get_correlation_id, get_user_id
from app.core.events import event_bus

# Recent envelopes for inspection; the bus is the delivery path.
RECENT_EVENTS_LIMIT = 500
published_events: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    actor = get_user_id()
    if actor is not None and "actor_user_id" not in meta:
        meta["actor_user_id"] = actor
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
