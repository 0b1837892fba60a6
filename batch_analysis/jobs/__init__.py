"""Job item lifecycle package."""

from batch_analysis.jobs.types import ItemEvent, ItemResult, ItemStatus, ItemTransition
from batch_analysis.jobs.models import AudioRecording, ItemContext, JobItem, Script

__all__ = [
    "ItemEvent",
    "ItemResult",
    "ItemStatus",
    "ItemTransition",
    "AudioRecording",
    "ItemContext",
    "JobItem",
    "Script",
]
