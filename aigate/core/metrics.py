"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("aigate", "AI admission gateway info")
APP_INFO.info({"version": "1.0.0", "name": "aigate"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

ADMISSION_DECISIONS = Counter(
    "aigate_admission_decisions_total",
    "Outcome of each gateway request (ok or the error code)",
    ["endpoint", "outcome"],
)

PROVIDER_RESOLUTIONS = Counter(
    "aigate_provider_resolutions_total",
    "Provider resolutions by source",
    ["source"],
)

USAGE_INCREMENT_FAILURES = Counter(
    "aigate_usage_increment_failures_total",
    "Post-success usage increments that failed or timed out",
)


# --- Middleware ---

# Requests that match no route share one label set
UNMATCHED_PATH = "unmatched"


def _route_path(request: Request) -> str:
    """Route template the router matched, e.g. /api/ai/chat."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_PATH


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        path = _route_path(request)

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
