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

fsm_status_transitions_total = Counter(
    "fsm_status_transitions_total",
    "Committed lifecycle status transitions",
    ["entity_type", "to_status"],
)

fsm_cascade_links_total = Counter(
    "fsm_cascade_links_total",
    "Upstream pointer link attempts by outcome",
    ["link", "outcome"],
)

fsm_write_conflicts_total = Counter(
    "fsm_write_conflicts_total",
    "Lifecycle write units retried after a concurrent modification",
)

fsm_refresh_runs_total = Counter(
    "fsm_refresh_runs_total",
    "Time-based status refresh sweeps by outcome",
    ["outcome"],
)

fsm_refresh_duration_seconds = Histogram(
    "fsm_refresh_duration_seconds",
    "Time-based status refresh sweep duration in seconds",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_status_transition(entity_type: str, to_status: str) -> None:
    fsm_status_transitions_total.labels(entity_type=entity_type, to_status=to_status).inc()


def observe_cascade_link(link: str, outcome: str) -> None:
    fsm_cascade_links_total.labels(link=link, outcome=outcome).inc()


def observe_write_conflict() -> None:
    fsm_write_conflicts_total.inc()


def observe_refresh_run(outcome: str, duration: float) -> None:
    fsm_refresh_runs_total.labels(outcome=outcome).inc()
    fsm_refresh_duration_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
