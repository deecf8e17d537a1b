from __future__ import annotations

import logging

from app import events
from app.metrics import observe_cache_revalidation


logger = logging.getLogger("app.cache")


def revalidate_path(path: str) -> None:
    """Mark rendered output for `path` stale; subscribers on the event bus do the purging."""

    observe_cache_revalidation()
    events.publish({"event_type": "cache.revalidate", "payload": {"path": path}})
    logger.debug("cache.revalidate", extra={"path": path})
