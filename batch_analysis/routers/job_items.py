"""Job item endpoints: status callbacks from job scripts and bulk transitions."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from batch_analysis.batch.tokens import ITEM_INVOKE, TokenSigner
from batch_analysis.deps.security import require_admin_token, verify_scoped_token
from batch_analysis.errors import IllegalTransitionError
from batch_analysis.jobs.orchestrator import JobOrchestrator
from batch_analysis.repositories.job_items import JobItemRepository
from batch_analysis.routers import metrics
from batch_analysis.schemas import (
    BulkTransitionRequest,
    BulkTransitionResponse,
    ItemStatusUpdate,
    JobItemResponse,
    ReportedStatus,
)

router = APIRouter(prefix="/analysis_jobs", tags=["analysis_jobs_items"])
logger = structlog.get_logger(__name__)

# Global state (set during app startup)
_db_pool = None
_orchestrator: Optional[JobOrchestrator] = None
_token_signer: Optional[TokenSigner] = None


def set_db_pool(pool):
    """Set the database pool for this router."""
    global _db_pool
    _db_pool = pool


def set_orchestrator(orchestrator: Optional[JobOrchestrator]):
    global _orchestrator
    _orchestrator = orchestrator


def set_token_signer(signer: Optional[TokenSigner]):
    global _token_signer
    _token_signer = signer


def _get_repo() -> JobItemRepository:
    if _db_pool is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection not available",
        )
    return JobItemRepository(_db_pool)


def _get_signer() -> TokenSigner:
    if _token_signer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token signer not configured",
        )
    return _token_signer


def _get_orchestrator() -> JobOrchestrator:
    if _orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job orchestrator not available",
        )
    return _orchestrator


class CreateItemsRequest(BaseModel):
    """Create one item per (recording, script) pair."""

    audio_recording_ids: list[int] = Field(..., min_length=1)
    script_ids: list[int] = Field(..., min_length=1)


class CreateItemsResponse(BaseModel):
    analysis_job_id: int
    created: int


@router.put("/{analysis_job_id}/items/{item_id}", response_model=JobItemResponse)
async def update_item_status(
    analysis_job_id: int,
    item_id: int,
    body: ItemStatusUpdate,
    request: Request,
):
    """Status callback from a running job script.

    ``working`` is applied immediately. ``failed`` and ``successful`` only
    mark the item for finishing; a worker then fetches the remote outcome.
    """
    verify_scoped_token(request, _get_signer(), *ITEM_INVOKE, scope=str(item_id))
    repo = _get_repo()

    item = await repo.get(item_id, analysis_job_id)
    if item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job item {item_id} not found",
        )

    log = logger.bind(item_id=item_id, reported=body.status.value)

    if body.status == ReportedStatus.WORKING:
        try:
            _get_orchestrator().work(item)
        except IllegalTransitionError as e:
            log.warning("status_callback_rejected", status=item.status.value, error=str(e))
            metrics.record_status_callback(body.status.value, "rejected")
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

        saved = await repo.record_work(item)
        if saved is None:
            metrics.record_status_callback(body.status.value, "rejected")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Job item {item_id} is no longer queued",
            )
        log.info("status_callback_applied")
        metrics.record_status_callback(body.status.value, "applied")
        return JobItemResponse.from_item(saved)

    marked = await repo.request_finish(item_id)
    log.info("status_callback_applied", finish_marked=marked)
    metrics.record_status_callback(body.status.value, "marked" if marked else "ignored")
    if marked:
        item = await repo.get(item_id) or item
    return JobItemResponse.from_item(item)


@router.post(
    "/{analysis_job_id}/items/transitions",
    response_model=BulkTransitionResponse,
)
async def mark_items_transition(
    analysis_job_id: int,
    body: BulkTransitionRequest,
    _: bool = Depends(require_admin_token),
):
    """Mark every eligible item of a job with a pending transition.

    Only the marker is written; workers perform the transitions later.
    """
    marked = await _get_repo().mark_transition(analysis_job_id, body.transition)
    metrics.record_bulk_marked(body.transition.value, marked)
    return BulkTransitionResponse(
        analysis_job_id=analysis_job_id,
        transition=body.transition,
        marked=marked,
    )


@router.post(
    "/{analysis_job_id}/items",
    response_model=CreateItemsResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_items(
    analysis_job_id: int,
    body: CreateItemsRequest,
    _: bool = Depends(require_admin_token),
):
    """Create new items for a job. They start marked for queueing."""
    created = await _get_repo().create_items(
        analysis_job_id, body.audio_recording_ids, body.script_ids
    )
    return CreateItemsResponse(analysis_job_id=analysis_job_id, created=created)
