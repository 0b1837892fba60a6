"""Pydantic request and response models for the HTTP surface."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from batch_analysis.jobs.models import JobItem
from batch_analysis.jobs.types import ItemResult, ItemStatus, ItemTransition


class ReportedStatus(str, Enum):
    """Statuses a running job script reports through its hooks."""

    WORKING = "working"
    FAILED = "failed"
    SUCCESSFUL = "successful"


class ItemStatusUpdate(BaseModel):
    """Body of the status callback sent by job scripts."""

    status: ReportedStatus = Field(..., description="Status reported by the job script")


class JobItemResponse(BaseModel):
    """A job item as returned by the API."""

    id: int
    analysis_job_id: int
    audio_recording_id: int
    script_id: int
    status: ItemStatus
    transition: Optional[ItemTransition] = None
    queue_id: Optional[str] = None
    attempts: int = 0
    result: Optional[ItemResult] = None
    error: Optional[str] = None
    used_walltime_seconds: Optional[int] = None
    used_memory_bytes: Optional[int] = None
    created_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    work_started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: JobItem) -> "JobItemResponse":
        return cls(
            id=item.id,
            analysis_job_id=item.analysis_job_id,
            audio_recording_id=item.audio_recording_id,
            script_id=item.script_id,
            status=item.status,
            transition=item.transition,
            queue_id=item.queue_id,
            attempts=item.attempts,
            result=item.result,
            error=item.error,
            used_walltime_seconds=item.used_walltime_seconds,
            used_memory_bytes=item.used_memory_bytes,
            created_at=item.created_at,
            queued_at=item.queued_at,
            work_started_at=item.work_started_at,
            finished_at=item.finished_at,
        )


class BulkTransitionRequest(BaseModel):
    """Request to mark every eligible item of an analysis job."""

    transition: ItemTransition = Field(..., description="Transition to mark items with")


class BulkTransitionResponse(BaseModel):
    analysis_job_id: int
    transition: ItemTransition
    marked: int = Field(..., description="Number of items marked")


class DependencyHealth(BaseModel):
    """Health status for a dependency."""

    status: str = Field(..., description="Dependency status (ok/error/unconfigured)")
    latency_ms: Optional[float] = Field(None, description="Response latency in ms")
    error: Optional[str] = Field(None, description="Error message if unhealthy")


class HealthResponse(BaseModel):
    """Response for health endpoint."""

    status: str = Field(..., description="Overall service status")
    database: DependencyHealth = Field(..., description="PostgreSQL health")
    remote_queue: DependencyHealth = Field(..., description="PBS head node health")
    circuits: dict[str, Any] = Field(..., description="Circuit breaker state")
    workers_running: int = Field(0, description="Worker loops running in this process")
    latency_ms: dict[str, float] = Field(..., description="Latency per dependency")
    version: str = Field(..., description="Service version")
