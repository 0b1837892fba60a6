"""Batch analysis orchestration service - FastAPI application."""

import time
import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from batch_analysis import __version__
from batch_analysis.config import get_settings
from batch_analysis.core.lifespan import lifespan
from batch_analysis.routers import health, job_items, metrics

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

settings = get_settings()

app = FastAPI(
    title="Batch Analysis",
    description="Runs analysis scripts over audio recordings on a PBS cluster",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    """Add request ID and timing to all requests."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception("Request failed", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "retryable": True},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-API-Version"] = __version__

    # Label by route template so item ids do not explode cardinality
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    if endpoint != "/metrics":
        metrics.record_request(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
            duration=duration_ms / 1000,
        )

    logger.info(
        "Request completed",
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    return response


app.include_router(health.router, tags=["health"])
app.include_router(job_items.router)
app.include_router(metrics.router)  # Metrics endpoint (excluded from OpenAPI)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"service": "batch-analysis", "version": __version__}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "batch_analysis.main:app",
        host=settings.service_host,
        port=settings.service_port,
        log_level=settings.log_level.lower(),
    )
