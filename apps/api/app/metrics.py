from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_mutations_total = Counter(
    "crm_mutations_total",
    "Total CRM mutations by entity, action and outcome",
    ["entity", "action", "outcome"],
)

auth_session_checks_total = Counter(
    "auth_session_checks_total",
    "Session verifications against the identity provider by outcome",
    ["outcome"],
)

auth_actions_total = Counter(
    "auth_actions_total",
    "Authentication actions by action and outcome",
    ["action", "outcome"],
)

route_guard_decisions_total = Counter(
    "route_guard_decisions_total",
    "Route guard decisions by route class and decision",
    ["route_class", "decision"],
)

cache_revalidations_total = Counter(
    "cache_revalidations_total",
    "Total cache revalidation requests",
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Payment provider webhook events by type and outcome",
    ["event_type", "outcome"],
)

emails_sent_total = Counter(
    "emails_sent_total",
    "Transactional e-mails by template and outcome",
    ["template", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_mutation(entity: str, action: str, outcome: str) -> None:
    crm_mutations_total.labels(entity=entity, action=action, outcome=outcome).inc()


def observe_session_check(outcome: str) -> None:
    auth_session_checks_total.labels(outcome=outcome).inc()


def observe_auth_action(action: str, outcome: str) -> None:
    auth_actions_total.labels(action=action, outcome=outcome).inc()


def observe_route_guard_decision(route_class: str, decision: str) -> None:
    route_guard_decisions_total.labels(route_class=route_class, decision=decision).inc()


def observe_cache_revalidation() -> None:
    cache_revalidations_total.inc()


def observe_webhook_event(event_type: str, outcome: str) -> None:
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def observe_email(template: str, outcome: str) -> None:
    emails_sent_total.labels(template=template, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
