"""Prometheus metrics middleware and engine counters."""
import time
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

# Request metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_requests_active",
    "Number of active HTTP requests",
)

# Bid-specific metrics
BID_COUNTER = Counter(
    "bids_total",
    "Total bid placements",
    ["status"],  # recorded, settling, rejected, error
)

BID_LATENCY = Histogram(
    "bid_latency_seconds",
    "Bid placement latency in seconds",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

# Aggregation metrics
TOP_COMPARISON_RETRIES = Counter(
    "top_comparison_retries_total",
    "Top-field compare-and-set attempts lost to a concurrent writer",
    ["layer"],  # bucket, party
)

STALE_REFRESHES = Counter(
    "stale_refresh_total",
    "Bounded recomputes of rows flagged stale",
    ["layer"],
)

# Maintenance metrics
MAINTENANCE_RUNS = Counter(
    "maintenance_runs_total",
    "Sweeper and backfill runs",
    ["job", "mode", "outcome"],  # job: sweep/backfill, mode: dry_run/live
)

MAINTENANCE_CHANGES = Counter(
    "maintenance_changes_total",
    "Rows changed by maintenance runs",
    ["job", "action"],
)


# =============================================================================
# Metrics Middleware
# =============================================================================

class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics for all HTTP requests."""

    # Endpoints to normalize for metrics (reduce cardinality)
    ENDPOINT_PATTERNS = {
        "/api/v1/bids": "/api/v1/bids",
        "/api/v1/parties": "/api/v1/parties",
        "/api/v1/aggregates/global": "/api/v1/aggregates/global",
        "/api/v1/aggregates": "/api/v1/aggregates",
        "/api/v1/maintenance": "/api/v1/maintenance",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        # Track active requests
        ACTIVE_REQUESTS.inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            status_code = 500
            raise
        finally:
            ACTIVE_REQUESTS.dec()
            latency = time.perf_counter() - start_time

            # Normalize endpoint for metrics (reduce cardinality)
            endpoint = self._normalize_endpoint(request.url.path)

            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status=status_code,
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=endpoint,
            ).observe(latency)

            # Track bid placement metrics
            if endpoint == "/api/v1/bids" and request.method == "POST":
                BID_LATENCY.observe(latency)
                BID_COUNTER.labels(status=bid_outcome(status_code)).inc()

        return response

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path to reduce metric cardinality."""
        for pattern, normalized in self.ENDPOINT_PATTERNS.items():
            if path.startswith(pattern):
                return normalized

        # Keep health and other endpoints as-is
        if path in ("/health", "/metrics"):
            return path

        return "/other"


def bid_outcome(status_code: int) -> str:
    """Label for a bid placement response."""
    if status_code == 201:
        return "recorded"
    if status_code == 202:
        return "settling"
    if status_code >= 500:
        return "error"
    return "rejected"


# =============================================================================
# Metrics Endpoint
# =============================================================================

async def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics scrape endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# =============================================================================
# Helper Functions for Manual Metric Recording
# =============================================================================

def record_maintenance_run(job: str, dry_run: bool, outcome: str) -> None:
    """Count one sweeper/backfill run."""
    mode = "dry_run" if dry_run else "live"
    MAINTENANCE_RUNS.labels(job=job, mode=mode, outcome=outcome).inc()


def record_maintenance_changes(job: str, action: str, count: int) -> None:
    """Count rows a live maintenance run changed."""
    if count > 0:
        MAINTENANCE_CHANGES.labels(job=job, action=action).inc(count)
