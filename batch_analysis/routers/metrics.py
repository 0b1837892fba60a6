"""Prometheus metrics endpoint for the batch analysis service."""

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

router = APIRouter()

# Request metrics
REQUEST_COUNT = Counter(
    "batch_analysis_requests_total",
    "Total number of requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "batch_analysis_request_latency_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Status callbacks from running job scripts
STATUS_CALLBACKS = Counter(
    "batch_analysis_status_callbacks_total",
    "Status callbacks received from job scripts",
    ["reported", "outcome"],  # outcome: applied, marked, ignored, rejected
)

BULK_ITEMS_MARKED = Counter(
    "batch_analysis_bulk_items_marked_total",
    "Job items marked by bulk transition requests",
    ["transition"],
)

# Database pool
DB_POOL_SIZE = Gauge(
    "batch_analysis_db_pool_size",
    "Current database connection pool size",
)

DB_POOL_AVAILABLE = Gauge(
    "batch_analysis_db_pool_available",
    "Available connections in database pool",
)


def record_request(method: str, endpoint: str, status_code: int, duration: float):
    """Record request metrics."""
    REQUEST_COUNT.labels(
        method=method, endpoint=endpoint, status_code=status_code
    ).inc()
    REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(duration)


def record_status_callback(reported: str, outcome: str):
    STATUS_CALLBACKS.labels(reported=reported, outcome=outcome).inc()


def record_bulk_marked(transition: str, count: int):
    if count > 0:
        BULK_ITEMS_MARKED.labels(transition=transition).inc(count)


def set_db_pool_metrics(pool_size: int, available: int):
    """Set database pool metrics."""
    DB_POOL_SIZE.set(pool_size)
    DB_POOL_AVAILABLE.set(available)


@router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
