"""Job item data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import UUID

from batch_analysis.batch.resources import DynamicResourceList
from batch_analysis.jobs.types import ItemResult, ItemStatus, ItemTransition


@dataclass
class JobItem:
    """One (analysis job, audio recording, script) unit of work."""

    id: int
    analysis_job_id: int
    audio_recording_id: int
    script_id: int

    status: ItemStatus = ItemStatus.NEW
    transition: Optional[ItemTransition] = ItemTransition.QUEUE

    # Remote tracking
    queue_id: Optional[str] = None
    attempts: int = 0

    # Outcome
    result: Optional[ItemResult] = None
    error: Optional[str] = None
    used_walltime_seconds: Optional[int] = None
    used_memory_bytes: Optional[int] = None
    import_success: Optional[bool] = None
    import_requested_at: Optional[datetime] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    queued_at: Optional[datetime] = None
    work_started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Worker claim info
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    transition_after: Optional[datetime] = None
    transition_failures: int = 0

    def append_error(self, message: Optional[str]) -> None:
        if not message:
            return
        self.error = message if self.error is None else f"{self.error}\n{message}"

    def clear_transition(self, transition: Optional[ItemTransition] = None) -> None:
        """Clear the marker, but only if it still holds ``transition``.

        A bulk request may have replaced the marker while the slow half
        ran; that newer intent is left in place.
        """
        if transition is not None and self.transition != transition:
            return
        self.transition = None

    def results_path(self, results_root: Path, recording_uuid: UUID) -> Path:
        """Directory the job writes its output to."""
        uuid = str(recording_uuid)
        return results_root / str(self.analysis_job_id) / uuid[:2] / uuid / str(self.script_id)


@dataclass
class AudioRecording:
    """The recording fields needed to run an analysis."""

    id: int
    uuid: UUID
    duration_seconds: float
    data_length_bytes: int
    recorded_date: datetime
    media_type: str = "audio/wav"
    site_name: str = "site"
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def extension(self) -> str:
        subtype = self.media_type.split("/")[-1]
        return {"mpeg": "mp3", "x-wav": "wav", "x-flac": "flac"}.get(subtype, subtype)

    @property
    def friendly_name(self) -> str:
        """File name the source audio is downloaded to."""
        recorded = self.recorded_date.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        safe_site = "".join(c if c.isalnum() else "_" for c in self.site_name)
        return f"{recorded}_{safe_site}_{self.id}.{self.extension}"


@dataclass
class Script:
    """An analysis script definition."""

    id: int
    executable_command: str
    executable_settings: Optional[str] = None
    executable_settings_name: Optional[str] = None
    resources: DynamicResourceList = field(default_factory=DynamicResourceList)


@dataclass
class ItemContext:
    """Everything the slow half of a transition needs for one item."""

    item: JobItem
    recording: Optional[AudioRecording] = None
    script: Optional[Script] = None
    custom_settings: Optional[str] = None

    @property
    def settings(self) -> Optional[str]:
        """Job level settings win over the script's defaults."""
        return self.custom_settings or (self.script.executable_settings if self.script else None)
