from __future__ import annotations

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

from billsync.core.settings import S

METRICS_ENABLED = S.metrics_enabled

# Reconciliation
WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Billing provider webhook deliveries by event category and outcome",
    ["category", "outcome"],
)
PROJECTIONS = Counter(
    "billing_projections_total",
    "Subscription projections onto directory metadata by result",
    ["result"],
)
LINK_WRITES = Counter(
    "billing_link_writes_total",
    "Writes made to link a billing customer and a directory user",
    ["side"],
)

# HTTP
HTTP_REQUESTS = Counter(
    "billsync_http_requests_total",
    "HTTP requests by route and status",
    ["method", "path", "status"],
)
HTTP_LATENCY = Histogram(
    "billsync_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)
HTTP_IN_FLIGHT = Gauge(
    "billsync_http_requests_in_progress",
    "In-progress HTTP requests",
    ["method", "path"],
)
UPTIME_SECONDS = Gauge("billsync_uptime_seconds", "Process uptime in seconds")
APP_INFO = Info("billsync", "Service metadata")

_STARTED = time.monotonic()


def record_webhook(category: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(category=category, outcome=outcome).inc()


def record_projection(result: str) -> None:
    PROJECTIONS.labels(result=result).inc()


def record_link_write(side: str) -> None:
    LINK_WRITES.labels(side=side).inc()


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def metrics_middleware(request: Request, call_next: Callable[[Request], Response]) -> Response:
    method = request.method
    path = _route_template(request)
    in_flight = HTTP_IN_FLIGHT.labels(method=method, path=path)
    in_flight.inc()
    started = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        in_flight.dec()
        HTTP_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - started)
        HTTP_REQUESTS.labels(method=method, path=path, status=str(status)).inc()


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def metrics_endpoint() -> Response:
    UPTIME_SECONDS.set(time.monotonic() - _STARTED)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
