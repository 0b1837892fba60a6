"""Remote job status records and PBS exit status mapping."""

import re
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from batch_analysis.jobs.types import ItemResult

JOB_EXEC_OK = 0
JOB_EXEC_KILL_WALLTIME = -29
JOB_EXEC_KILL_HPMEM = -31

# qdel sends SIGTERM; PBS reports signals as 256 + signal number
CANCELLED_EXIT_STATUS = 256 + int(signal.SIGTERM)

# PBS special (negative) exit codes
PBS_EXIT_MESSAGES: dict[int, str] = {
    -1: "Job exec failed, before files, no retry",
    -2: "Job exec failed, after files, no retry",
    -3: "Job exec failed, do retry",
    -4: "Job aborted on MoM initialization",
    -5: "Job aborted on MoM init, checkpoint, no migrate",
    -6: "Job aborted on MoM init, checkpoint, ok migrate",
    -7: "Job restart failed",
    -8: "Exec failed, do retry",
    -9: "Could not create/open stdout stderr files",
    -10: "Job exec failed due to a bad password",
    -11: "Job was rerun",
    -12: "Job was checkpointed and killed",
    -13: "Job failed due to a bad password",
    -14: "Job failed due to a bad dependency",
    -15: "Job requeued due to MoM restart",
    -16: "Job exec failed due to a hook rejection, requeue the job",
    -17: "job exec failed due to a hook rejection, delete the job at end",
    -18: "Job exec failed due to stdout/stderr file errors",
    -19: "Job exec failed due to stage-in failure",
    -20: "Mother superior connection failed",
    -21: "Job exec failed due to a bad address",
    -22: "Job exec failed due to a bad login",
    -23: "Job exec failed due to a full login",
    -24: "Job exec failed due to missing credentials",
    -25: "Job exec failed due to a pre-start failure",
    -26: "Job exec failed due to a post-start failure",
    -27: "Job was deleted during stage-in",
    -28: "Job exec failed due to a bad cpuset",
    JOB_EXEC_KILL_WALLTIME: "job exec failed due to exceeding walltime",
    -30: "Job was a join job",
    JOB_EXEC_KILL_HPMEM: "Job exec failed due to exceeding hpmem",
    -32: "Job execution hung due to re-imaged mom or lost job info from MoM",
}


def map_exit_status(exit_status: Optional[int]) -> Optional[ItemResult]:
    """Classify a PBS exit status.

    0 is success, 256 + SIGTERM is a cancellation, negative PBS codes and
    other signals are kills, and 1 to 255 are script failures.
    """
    if exit_status is None:
        return None
    if not isinstance(exit_status, int) or isinstance(exit_status, bool):
        raise ValueError(f"exit_status {exit_status!r} must be an int")

    if exit_status == JOB_EXEC_OK:
        return ItemResult.SUCCESS
    if exit_status == CANCELLED_EXIT_STATUS:
        return ItemResult.CANCELLED
    if exit_status < 0:
        return ItemResult.KILLED
    if exit_status < 256:
        return ItemResult.FAILED
    return ItemResult.KILLED


def exit_status_message(exit_status: Optional[int]) -> Optional[str]:
    """Human readable explanation for a non-successful exit status."""
    if exit_status is None or exit_status in (JOB_EXEC_OK, CANCELLED_EXIT_STATUS):
        return None
    if exit_status < 0:
        return PBS_EXIT_MESSAGES.get(exit_status)
    if exit_status < 256:
        return f"Script failed. Exit status {exit_status}"
    return f"Script killed by signal {exit_status - 256}. Exit status {exit_status}"


class RemoteJobState(str, Enum):
    """PBS job_state letters."""

    BEGUN = "B"
    EXITING = "E"
    FINISHED = "F"
    HELD = "H"
    MOVED = "M"
    QUEUED = "Q"
    RUNNING = "R"
    SUSPENDED = "S"
    TRANSITIONING = "T"
    WAITING = "W"
    SUBJOBS_FINISHED = "X"
    # Not a PBS state: the queue has no record of the job
    UNKNOWN = "?"


WALLTIME_PATTERN = re.compile(r"^(\d+):(\d{2}):(\d{2})(?:\.\d+)?$")
MEMORY_PATTERN = re.compile(r"^(\d+)\s*([kmgt]?b)?$", re.IGNORECASE)
MEMORY_UNITS = {
    "b": 1,
    "kb": 1024,
    "mb": 1024**2,
    "gb": 1024**3,
    "tb": 1024**4,
}


def parse_walltime(value: Any) -> Optional[int]:
    """Parse ``HH:MM:SS`` (or bare seconds) into seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    match = WALLTIME_PATTERN.match(text)
    if not match:
        return None
    hours, minutes, seconds = (int(g) for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def parse_memory(value: Any) -> Optional[int]:
    """Parse a PBS size such as ``7060kb`` into bytes."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    match = MEMORY_PATTERN.match(str(value).strip())
    if not match:
        return None
    number, unit = match.groups()
    unit = (unit or "b").lower()
    return int(number) * MEMORY_UNITS[unit]


@dataclass
class JobStatus:
    """A snapshot of one remote job as reported by the queue."""

    queue_id: str
    state: RemoteJobState
    exit_status: Optional[int] = None
    result: Optional[ItemResult] = None
    error: Optional[str] = None
    used_walltime_seconds: Optional[int] = None
    used_memory_bytes: Optional[int] = None
    comment: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.state in (RemoteJobState.FINISHED, RemoteJobState.SUBJOBS_FINISHED)

    @property
    def gone(self) -> bool:
        return self.state == RemoteJobState.UNKNOWN

    @property
    def running(self) -> bool:
        return self.state in (RemoteJobState.RUNNING, RemoteJobState.BEGUN, RemoteJobState.EXITING)

    @property
    def queued(self) -> bool:
        return self.state in (RemoteJobState.QUEUED, RemoteJobState.WAITING, RemoteJobState.TRANSITIONING)

    @property
    def held(self) -> bool:
        return self.state in (RemoteJobState.HELD, RemoteJobState.SUSPENDED)

    @property
    def is_final(self) -> bool:
        """True when no further query can change the outcome."""
        return self.finished or self.gone

    @classmethod
    def from_pbs(cls, queue_id: str, job: dict[str, Any]) -> "JobStatus":
        """Build a status from one entry of ``qstat -f -F JSON`` output."""
        letter = str(job.get("job_state") or "")[:1]
        if not letter or letter == RemoteJobState.UNKNOWN.value:
            raise ValueError(f"Job {queue_id} has no usable job_state")
        state = RemoteJobState(letter)

        exit_status = job.get("Exit_status")
        if exit_status is not None:
            exit_status = int(exit_status)

        used = job.get("resources_used") or {}
        return cls(
            queue_id=queue_id,
            state=state,
            exit_status=exit_status,
            result=map_exit_status(exit_status),
            error=exit_status_message(exit_status),
            used_walltime_seconds=parse_walltime(used.get("walltime")),
            used_memory_bytes=parse_memory(used.get("mem")),
            comment=job.get("comment"),
            raw=job,
        )

    @classmethod
    def unknown(cls, queue_id: str) -> "JobStatus":
        """Status for a job the remote queue no longer knows about.

        The outcome cannot be recovered, so it is recorded as a failure.
        """
        return cls(
            queue_id=queue_id,
            state=RemoteJobState.UNKNOWN,
            result=ItemResult.FAILED,
            error=f"Remote queue has no record of job {queue_id}",
        )
