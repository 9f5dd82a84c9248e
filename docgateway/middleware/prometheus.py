"""Prometheus instrumentation for the gateway.

Everything registers on a private REGISTRY served at /metrics, so importing
other prometheus-instrumented libraries cannot collide with these names.

HTTP
    http_requests_total{method, route, status}
    http_request_duration_seconds{method, route}
Response cache
    cache_lookups_total{result}            hit | miss
    cache_errors_total{operation}          backend failures absorbed as misses
Generation provider
    generation_requests_total{model, outcome}
    generation_request_duration_seconds{model}
Audit pipeline
    audit_events_total{kind, result}       written | failed | dropped | disabled
Rate limiting
    rate_limit_rejections_total{tier}      general | elevated

Cache and audit failures never reach callers. These counters are where
operators see them.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import Scope

REGISTRY = CollectorRegistry(auto_describe=True)

UNMATCHED_ROUTE = "unmatched"

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "route", "status"],
    registry=REGISTRY,
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)

cache_lookups_total = Counter(
    "cache_lookups_total",
    "Response cache lookups",
    ["result"],
    registry=REGISTRY,
)
cache_errors_total = Counter(
    "cache_errors_total",
    "Cache backend failures absorbed by the gateway",
    ["operation"],
    registry=REGISTRY,
)

generation_requests_total = Counter(
    "generation_requests_total",
    "Generation provider calls",
    ["model", "outcome"],
    registry=REGISTRY,
)
generation_request_duration_seconds = Histogram(
    "generation_request_duration_seconds",
    "Generation provider latency in seconds, retries included",
    ["model"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0),
    registry=REGISTRY,
)

audit_events_total = Counter(
    "audit_events_total",
    "Audit events by kind and durable-write result",
    ["kind", "result"],
    registry=REGISTRY,
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the rate governor",
    ["tier"],
    registry=REGISTRY,
)


def record_cache_lookup(hit: bool) -> None:
    cache_lookups_total.labels(result="hit" if hit else "miss").inc()


def record_cache_error(operation: str) -> None:
    cache_errors_total.labels(operation=operation).inc()


def record_generation(model: str, outcome: str, duration_seconds: float) -> None:
    """Record one provider call.

    ``outcome`` is "success" or the GatewayError category of the failure.
    """
    generation_requests_total.labels(model=model, outcome=outcome).inc()
    generation_request_duration_seconds.labels(model=model).observe(duration_seconds)


def record_audit_event(kind: str, result: str) -> None:
    audit_events_total.labels(kind=kind, result=result).inc()


def record_rate_limit_rejection(tier: str) -> None:
    rate_limit_rejections_total.labels(tier=tier).inc()


def route_template(scope: Scope) -> str:
    """Label for a request: the matched route's path template, never the raw path.

    Read after routing has run. The router leaves the matched route in the
    scope; when it was reached through included routers its own ``path`` is
    relative, and the prefixes they consumed are the part of ``root_path``
    beyond ``app_root_path``. Raw paths would give every probe of a
    nonexistent URL its own series.
    """
    path = getattr(scope.get("route"), "path", None)
    if path is None:
        return UNMATCHED_ROUTE
    root_path = scope.get("root_path", "")
    app_root_path = scope.get("app_root_path")
    if app_root_path is None or not root_path.startswith(app_root_path):
        return path
    return root_path[len(app_root_path):] + path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Counts and times every HTTP request except scrapes of /metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = route_template(request.scope)
            http_requests_total.labels(method=request.method, route=route, status=str(status_code)).inc()
            http_request_duration_seconds.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )


def get_metrics() -> Response:
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
