"""Health check endpoint."""

import asyncio
import time

import structlog
from fastapi import APIRouter

from batch_analysis import __version__
from batch_analysis.core import lifespan
from batch_analysis.core.resilience import get_circuit_status
from batch_analysis.routers import metrics
from batch_analysis.schemas import DependencyHealth, HealthResponse

router = APIRouter()
logger = structlog.get_logger(__name__)


async def check_database_health(pool) -> DependencyHealth:
    """Check PostgreSQL connectivity."""
    if pool is None:
        return DependencyHealth(status="unconfigured", error="Database pool not initialized")

    start = time.perf_counter()
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        metrics.set_db_pool_metrics(pool.get_size(), pool.get_idle_size())
        return DependencyHealth(status="ok", latency_ms=(time.perf_counter() - start) * 1000)
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        return DependencyHealth(status="error", latency_ms=latency, error=str(e))


async def check_remote_queue_health(client) -> DependencyHealth:
    """Check the PBS head node answers over SSH."""
    if client is None:
        return DependencyHealth(status="unconfigured", error="PBS client not initialized")

    start = time.perf_counter()
    reachable = await client.test_connection()
    latency = (time.perf_counter() - start) * 1000
    if reachable:
        return DependencyHealth(status="ok", latency_ms=latency)
    return DependencyHealth(status="error", latency_ms=latency, error="PBS head node unreachable")


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Check health of service and all dependencies.

    Returns status of PostgreSQL and the PBS head node, the database
    circuit breaker state and the number of running worker loops.
    """
    database, remote_queue = await asyncio.gather(
        check_database_health(lifespan.get_db_pool()),
        check_remote_queue_health(lifespan.get_pbs_client()),
    )

    overall_status = "ok" if database.status == remote_queue.status == "ok" else "degraded"

    latency_ms: dict[str, float] = {}
    if database.latency_ms is not None:
        latency_ms["database"] = database.latency_ms
    if remote_queue.latency_ms is not None:
        latency_ms["remote_queue"] = remote_queue.latency_ms

    worker_pool = lifespan.get_worker_pool()
    workers_running = (
        sum(1 for runner in worker_pool.runners if runner.is_running) if worker_pool else 0
    )

    logger.info(
        "Health check completed",
        status=overall_status,
        database=database.status,
        remote_queue=remote_queue.status,
    )

    return HealthResponse(
        status=overall_status,
        database=database,
        remote_queue=remote_queue,
        circuits=get_circuit_status(),
        workers_running=workers_running,
        latency_ms=latency_ms,
        version=__version__,
    )
