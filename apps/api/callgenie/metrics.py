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

voice_provider_requests_total = Counter(
    "voice_provider_requests_total",
    "Total voice provider requests by operation and outcome",
    ["operation", "outcome"],
)

voice_provider_request_duration_seconds = Histogram(
    "voice_provider_request_duration_seconds",
    "Voice provider request duration in seconds",
    ["operation"],
)

call_detail_lookups_total = Counter(
    "call_detail_lookups_total",
    "Call detail lookups by the source that answered them",
    ["source"],
)

leads_upserted_total = Counter(
    "leads_upserted_total",
    "Leads written by upsert, by result",
    ["result"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\+?\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_voice_provider_request(operation: str, outcome: str, duration: float) -> None:
    voice_provider_requests_total.labels(operation=operation, outcome=outcome).inc()
    voice_provider_request_duration_seconds.labels(operation=operation).observe(duration)


def observe_call_detail_lookup(source: str) -> None:
    call_detail_lookups_total.labels(source=source).inc()


def observe_leads_upserted(inserted: int, modified: int) -> None:
    if inserted > 0:
        leads_upserted_total.labels(result="inserted").inc(inserted)
    if modified > 0:
        leads_upserted_total.labels(result="modified").inc(modified)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
