"""Job item type definitions."""

from enum import Enum


class ItemStatus(str, Enum):
    """Job item lifecycle statuses."""

    NEW = "new"
    QUEUED = "queued"
    WORKING = "working"
    FINISHED = "finished"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (only a retry moves it again)."""
        return self == ItemStatus.FINISHED

    @property
    def is_remote(self) -> bool:
        """Statuses in which the item is tracked by the remote queue."""
        return self in (ItemStatus.QUEUED, ItemStatus.WORKING)


class ItemTransition(str, Enum):
    """Pending-intent markers written by the fast half of a transition."""

    QUEUE = "queue"
    CANCEL = "cancel"
    FINISH = "finish"
    RETRY = "retry"


class ItemEvent(str, Enum):
    """State machine events."""

    QUEUE = "queue"
    WORK = "work"
    FINISH = "finish"
    CANCEL = "cancel"
    RETRY = "retry"


class ItemResult(str, Enum):
    """Terminal classification of a finished item."""

    SUCCESS = "success"
    FAILED = "failed"
    KILLED = "killed"
    CANCELLED = "cancelled"

    @property
    def is_retryable(self) -> bool:
        return self in (ItemResult.FAILED, ItemResult.KILLED, ItemResult.CANCELLED)
