"""Application lifespan management - startup and shutdown logic."""

import traceback
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
import structlog
from fastapi import FastAPI

from batch_analysis import __version__
from batch_analysis.batch.pbs import PBSClient
from batch_analysis.batch.tokens import TokenSigner
from batch_analysis.batch.transport import SSHTransport
from batch_analysis.config import Settings, get_settings
from batch_analysis.jobs.collaborators import PendingImportMarker, RepositoryProgressAggregator
from batch_analysis.jobs.orchestrator import JobOrchestrator
from batch_analysis.jobs.submission import SubmissionBuilder
from batch_analysis.jobs.worker import WorkerPool
from batch_analysis.repositories.job_items import JobItemRepository
from batch_analysis.routers import job_items

logger = structlog.get_logger(__name__)

# Global clients - accessed by other modules
_db_pool: Optional[asyncpg.Pool] = None
_pbs_client: Optional[PBSClient] = None
_worker_pool: Optional[WorkerPool] = None


def get_db_pool() -> Optional[asyncpg.Pool]:
    """Get the database connection pool."""
    return _db_pool


def get_pbs_client() -> Optional[PBSClient]:
    """Get the PBS client."""
    return _pbs_client


def get_worker_pool() -> Optional[WorkerPool]:
    return _worker_pool


async def _init_database(settings: Settings) -> Optional[asyncpg.Pool]:
    """Initialize the asyncpg connection pool."""
    if not settings.database_url:
        logger.warning("Database connection not configured. Set DATABASE_URL in .env")
        return None

    try:
        logger.info(
            "Attempting database connection",
            url_prefix=settings.database_url[:30] + "...",
        )
        pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            timeout=10,
            command_timeout=30,
        )
        logger.info(
            "Database pool initialized",
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
        return pool
    except Exception as e:
        logger.error(
            "Failed to initialize database pool - endpoints requiring DB will be unavailable",
            error=str(e),
            traceback=traceback.format_exc(),
        )
        return None


def build_orchestrator(
    settings: Settings, pool, client: PBSClient, signer: TokenSigner
) -> JobOrchestrator:
    """Wire the orchestrator with its database backed collaborators."""
    repo = JobItemRepository(pool)
    return JobOrchestrator(
        client=client,
        builder=SubmissionBuilder(settings, signer),
        progress=RepositoryProgressAggregator(repo),
        importer=PendingImportMarker(repo),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global _db_pool, _pbs_client, _worker_pool

    settings = get_settings()
    logger.info(
        "Starting batch analysis service",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        pbs_host=settings.pbs_host,
        worker_enabled=settings.worker_enabled,
    )

    _db_pool = await _init_database(settings)
    _pbs_client = PBSClient(settings, SSHTransport(settings))
    signer = TokenSigner.from_settings(settings)

    job_items.set_token_signer(signer)
    if _db_pool:
        orchestrator = build_orchestrator(settings, _db_pool, _pbs_client, signer)
        job_items.set_db_pool(_db_pool)
        job_items.set_orchestrator(orchestrator)

        if settings.worker_enabled:
            _worker_pool = WorkerPool(_db_pool, orchestrator, _pbs_client, settings)
            await _worker_pool.start()
        else:
            logger.info("Transition workers disabled (WORKER_ENABLED=false)")

    yield

    logger.info("Shutting down batch analysis service")

    # Stop workers first (before DB pool closes)
    if _worker_pool:
        await _worker_pool.stop()
        _worker_pool = None

    job_items.set_orchestrator(None)
    job_items.set_db_pool(None)
    job_items.set_token_signer(None)

    if _db_pool:
        await _db_pool.close()
        logger.info("Database pool closed")
        _db_pool = None
