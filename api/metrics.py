"""
Prometheus metrics for the Votely API.

Metrics are exposed at /metrics in Prometheus text format.
"""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

APP_INFO = Info("votely", "Votely application information")

# =============================================================================
# HTTP Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "votely_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "votely_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# =============================================================================
# Upload / Storage Metrics
# =============================================================================

VIDEO_UPLOADS_TOTAL = Counter(
    "votely_video_uploads_total",
    "Total video uploads",
    ["mode", "result"],  # mode: direct, proxy. result: success, rejected, failed
)

STORAGE_FALLBACK_TOTAL = Counter(
    "votely_storage_fallback_total",
    "Cloud uploads that failed and were stored on local disk instead",
)

THUMBNAILS_GENERATED_TOTAL = Counter(
    "votely_thumbnails_generated_total",
    "Server-side thumbnail generations",
    ["result"],  # success, failed
)

# =============================================================================
# Voting Metrics
# =============================================================================

VOTES_TOTAL = Counter(
    "votely_votes_total",
    "Vote operations",
    ["action"],  # cast, remove, reset
)


def _endpoint_label(request: Request) -> str:
    # Route template keeps label cardinality bounded (/api/videos/{video_id})
    route = request.scope.get("route")
    if route is not None and getattr(route, "path", None):
        return route.path
    return "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record request counts and latencies per route template."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = _endpoint_label(request)
            HTTP_REQUESTS_TOTAL.labels(request.method, endpoint, str(status_code)).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(request.method, endpoint).observe(time.perf_counter() - start)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "votely"})
