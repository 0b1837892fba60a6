"""Remote queue client protocol.

Every operation returns a ``QueueResult``: either a value or an error,
never both. Callers branch on ``result.ok`` explicitly.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Mapping, Optional, Protocol, TypeVar

from batch_analysis.batch.status import JobStatus
from batch_analysis.errors import RemoteQueueError

T = TypeVar("T")


@dataclass(frozen=True)
class QueueResult(Generic[T]):
    """Outcome of a remote queue call."""

    value: Optional[T] = None
    error: Optional[RemoteQueueError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "QueueResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: RemoteQueueError) -> "QueueResult[T]":
        return cls(error=error)


@dataclass(frozen=True)
class Hooks:
    """Shell snippets run by the job wrapper at its hook points."""

    start: str = 'log "NOOP start hook"'
    success: str = 'log "NOOP success hook"'
    error: str = 'log "NOOP error hook"'


class QueueClient(Protocol):
    """Operations against the remote batch queue."""

    async def submit(
        self,
        script: str,
        working_directory: Path,
        job_name: str,
        hooks: Hooks,
        env: Mapping[str, str],
        resources: Mapping[str, int],
    ) -> QueueResult[str]:
        """Submit a job; the value is the remote queue id."""
        ...

    async def cancel(self, queue_id: str) -> QueueResult[str]:
        """Cancel a job. An id the queue no longer knows is a success."""
        ...

    async def fetch_status(self, queue_id: str) -> QueueResult[JobStatus]:
        """Query a job. An unknown id fails with ``UnknownJobError``."""
        ...

    async def clear_history(self, queue_id: str) -> QueueResult[str]:
        """Purge the queue's record of a finished job."""
        ...
