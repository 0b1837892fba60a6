"""Error taxonomy for batch analysis orchestration."""

from typing import Optional


class BatchAnalysisError(Exception):
    """Base error for the orchestration core."""


class ValidationError(BatchAnalysisError):
    """Malformed command template or incompatible resource request.

    Always raised before any remote call is attempted. Never retried.
    """


class RemoteQueueError(BatchAnalysisError):
    """Failure talking to the remote batch queue."""

    def __init__(
        self,
        message: str,
        queue_id: Optional[str] = None,
        transient: bool = False,
    ):
        self.queue_id = queue_id
        self.transient = transient
        super().__init__(message)


class TransportError(RemoteQueueError):
    """Could not reach the remote queue (connection refused, ssh failure)."""

    def __init__(self, message: str = "Remote queue unreachable", queue_id: Optional[str] = None):
        super().__init__(message, queue_id=queue_id, transient=True)


class RemoteQueueTimeoutError(RemoteQueueError):
    """A remote queue command did not finish within its timeout."""

    def __init__(
        self,
        message: str = "Remote queue command timed out",
        queue_id: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        self.timeout_s = timeout_s
        super().__init__(message, queue_id=queue_id, transient=True)


class UnknownJobError(RemoteQueueError):
    """The remote queue has no record of the job id.

    Definitive: for cancel and clear this means the job is already gone.
    """

    def __init__(self, queue_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Unknown job id: {queue_id}",
            queue_id=queue_id,
            transient=False,
        )


class IllegalTransitionError(BatchAnalysisError):
    """An event was fired from a state that does not permit it."""

    def __init__(self, item_id, status: str, event: str, reason: Optional[str] = None):
        self.item_id = item_id
        self.status = status
        self.event = event
        self.reason = reason
        message = f"Cannot {event} job item {item_id} from status '{status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
