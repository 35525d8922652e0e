"""
Prometheus HTTP metrics.

  - http_requests_total{surface, method, endpoint, status}
  - http_request_duration_seconds{surface, endpoint}
  - http_requests_in_progress{surface}
  - app_info

``surface`` splits admin traffic (``/flags``) from tenant evaluation
(``/feature-flags``) so evaluation latency can be alerted on by itself.
Flag-level counters (flag_evaluations_total, flag_admin_operations_total,
flag_evaluation_log_*) live next to the code that increments them and share
the default registry.
"""

import re
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_COUNT = Counter(
    "http_requests_total",
    "HTTP requests by API surface",
    ["surface", "method", "endpoint", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["surface", "endpoint"],
    # evaluation calls are expected to be in the low milliseconds
    buckets=(0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1),
)
REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "In-flight HTTP requests",
    ["surface"],
)
APP_INFO = Info("app", "Application metadata")

_UUID_SEGMENT = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
# Tenant ids and flag keys are opaque strings, collapsed by position.
_EVALUATION_PATH = re.compile(r"(/feature-flags)/[^/]+(/[^/]+)?$")
_OVERRIDE_PATH = re.compile(r"/overrides/[^/]+$")


def normalize_path(path: str) -> str:
    """Replace ids in a path with placeholders to bound label cardinality."""
    path = _UUID_SEGMENT.sub("{id}", path)
    path = _EVALUATION_PATH.sub(
        lambda m: m.group(1) + "/{tenant_id}" + ("/{flag_key}" if m.group(2) else ""), path
    )
    return _OVERRIDE_PATH.sub("/overrides/{tenant_id}", path)


def surface_of(path: str) -> str:
    if "/feature-flags" in path:
        return "evaluation"
    if "/flags" in path:
        return "admin"
    return "system"


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = normalize_path(request.url.path)
        surface = surface_of(endpoint)
        status = "500"
        REQUESTS_IN_PROGRESS.labels(surface=surface).inc()
        start = time.perf_counter()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            REQUESTS_IN_PROGRESS.labels(surface=surface).dec()
            REQUEST_COUNT.labels(surface=surface, method=request.method, endpoint=endpoint, status=status).inc()
            REQUEST_DURATION.labels(surface=surface, endpoint=endpoint).observe(time.perf_counter() - start)


def metrics_endpoint(request: Request) -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def set_app_info(version: str, env: str) -> None:
    APP_INFO.info({"version": version, "environment": env})
