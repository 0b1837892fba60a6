"""PBS implementation of the remote queue client.

Wraps the PBS command line tools (qsub, qstat, qdel, qselect, qmgr) run
over SSH on the head node.

Usage:
    client = PBSClient(settings, SSHTransport(settings))
    result = await client.submit(script, path, job_name="42", hooks=Hooks(),
                                 env={}, resources={"ncpus": 1})
    if result.ok:
        queue_id = result.value
"""

import json
import re
import shlex
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Mapping, Optional

import structlog

from batch_analysis.batch.client import Hooks, QueueResult
from batch_analysis.batch.status import JobStatus
from batch_analysis.batch.transport import CommandOutput, SSHTransport
from batch_analysis.config import Settings
from batch_analysis.errors import RemoteQueueError, UnknownJobError

logger = structlog.get_logger(__name__)

ENV_PBS_O_WORKDIR = "PBS_O_WORKDIR"
ENV_TMPDIR = "TMPDIR"

JOB_NAME_SANITIZER = re.compile(r"[^_A-Za-z0-9.]+")

# Used for any resource the caller does not request (qsub names and units)
DEFAULT_RESOURCES: dict[str, object] = {
    "ncpus": 4,
    "mem": "16gb",
    "walltime": 3600,
}

UNKNOWN_JOB_MARKERS = ("unknown job id",)
ALREADY_FINISHED_MARKERS = ("job has finished",)

JOB_TEMPLATE = """#!/usr/bin/env bash
# Generated {date}
set -euo pipefail

log() {{
    echo "$(date --iso-8601=seconds) $*"
}}

on_exit() {{
    local exit_code=$?
    set +e
    if [ "$exit_code" -eq 0 ]; then
        log "Running success hook"
        {success_hook} || log "Success hook failed"
    else
        log "Running error hook (exit status $exit_code)"
        {error_hook} || log "Error hook failed"
    fi
    exit "$exit_code"
}}
trap on_exit EXIT

log "Job $PBS_JOBID ($PBS_JOBNAME) started on $(hostname)"
log "Running start hook"
{start_hook} || log "Start hook failed"

{script}
"""


def sanitize_job_name(name: str) -> str:
    return JOB_NAME_SANITIZER.sub("_", name)


def _mentions(output: CommandOutput, markers: tuple[str, ...]) -> bool:
    text = f"{output.stdout}\n{output.stderr}".lower()
    return any(marker in text for marker in markers)


def _command_error(output: CommandOutput, action: str, queue_id: Optional[str] = None) -> RemoteQueueError:
    detail = (output.stderr or output.stdout).strip()
    return RemoteQueueError(
        f"Command failed with status {output.exit_code} when {action}: {detail}",
        queue_id=queue_id,
    )


def parse_qmgr_value(output: str, key: str) -> Optional[str]:
    """Find ``key = value`` in ``qmgr -c 'list server ...'`` output."""
    for line in output.splitlines():
        if not line.strip() or line.startswith("Server"):
            continue
        name, sep, value = line.partition("=")
        if not sep:
            raise ValueError(f"Unknown qmgr format for line {line!r}")
        if name.strip() == key:
            return value.strip()
    return None


class PBSClient:
    """Remote queue client for a PBS cluster."""

    def __init__(self, settings: Settings, transport: SSHTransport):
        self._settings = settings
        self._transport = transport

    def remote_path(self, local_path: Path) -> PurePosixPath:
        """Translate a local data path to where cluster nodes see it."""
        local = PurePosixPath(local_path)
        try:
            relative = local.relative_to(PurePosixPath(self._settings.local_data_root))
        except ValueError:
            return local
        return PurePosixPath(self._settings.cluster_data_root) / relative

    def render_job_script(self, script: str, hooks: Hooks) -> str:
        return JOB_TEMPLATE.format(
            date=datetime.now(timezone.utc).isoformat(),
            start_hook=hooks.start,
            success_hook=hooks.success,
            error_hook=hooks.error,
            script=script,
        )

    def qsub_command(
        self,
        working_directory: PurePosixPath,
        script_path: PurePosixPath,
        job_name: str,
        env: Mapping[str, str],
        resources: Mapping[str, int],
        hold: bool = False,
    ) -> str:
        parts = [
            "qsub",
            "-N",
            job_name,
            "-P",
            shlex.quote(self._settings.pbs_default_project),
        ]
        if self._settings.pbs_default_queue:
            parts += ["-q", shlex.quote(self._settings.pbs_default_queue)]
        if hold:
            parts.append("-h")

        merged = {**DEFAULT_RESOURCES, **resources}
        for key, value in merged.items():
            parts += ["-l", f"{key}={value}"]

        if self._settings.pbs_primary_group:
            parts += ["-W", shlex.quote(f"group_list={self._settings.pbs_primary_group}")]

        if env:
            pairs = ",".join(f"{key}='{value}'" for key, value in env.items())
            parts += ["-v", f'"{pairs}"']

        parts.append(shlex.quote(str(script_path)))
        return f"cd {shlex.quote(str(working_directory))} && {' '.join(parts)}"

    async def submit(
        self,
        script: str,
        working_directory: Path,
        job_name: str,
        hooks: Hooks,
        env: Mapping[str, str],
        resources: Mapping[str, int],
        hold: bool = False,
    ) -> QueueResult[str]:
        if not script or not script.strip():
            raise ValueError("script must not be empty")

        name = sanitize_job_name(job_name)
        remote_dir = self.remote_path(working_directory)
        # Hidden so it does not show up among the job's results
        script_path = remote_dir / f".{name}"

        try:
            uploaded = await self._transport.upload(
                self.render_job_script(script, hooks), script_path
            )
            if not uploaded.ok:
                return QueueResult.failure(_command_error(uploaded, "uploading job script"))

            chmod = await self._transport.execute(f"chmod +x {shlex.quote(str(script_path))}")
            if not chmod.ok:
                return QueueResult.failure(_command_error(chmod, "making job script executable"))

            command = self.qsub_command(remote_dir, script_path, name, env, resources, hold)
            output = await self._transport.execute(command)
        except RemoteQueueError as e:
            return QueueResult.failure(e)

        if not output.ok:
            return QueueResult.failure(_command_error(output, "submitting job with qsub"))

        queue_id = output.stdout.strip()
        logger.info("pbs_job_submitted", job_name=name, queue_id=queue_id, resources=dict(resources))
        return QueueResult.success(queue_id)

    async def cancel(self, queue_id: str) -> QueueResult[str]:
        return await self._qdel(queue_id, f"qdel -x {shlex.quote(queue_id)}", "cancelling job")

    async def clear_history(self, queue_id: str) -> QueueResult[str]:
        return await self._qdel(
            queue_id, f"qdel -x -W force {shlex.quote(queue_id)}", "clearing job history"
        )

    async def _qdel(self, queue_id: str, command: str, action: str) -> QueueResult[str]:
        try:
            output = await self._transport.execute(command)
        except RemoteQueueError as e:
            e.queue_id = e.queue_id or queue_id
            return QueueResult.failure(e)

        if output.ok:
            return QueueResult.success(output.stdout.strip())
        if _mentions(output, UNKNOWN_JOB_MARKERS + ALREADY_FINISHED_MARKERS):
            logger.info("pbs_job_already_gone", queue_id=queue_id, action=action)
            return QueueResult.success(output.stderr.strip())
        return QueueResult.failure(_command_error(output, action, queue_id))

    async def fetch_status(self, queue_id: str) -> QueueResult[JobStatus]:
        try:
            output = await self._transport.execute(f"qstat -x -f -F JSON {shlex.quote(queue_id)}")
        except RemoteQueueError as e:
            e.queue_id = e.queue_id or queue_id
            return QueueResult.failure(e)

        if not output.ok:
            if _mentions(output, UNKNOWN_JOB_MARKERS):
                return QueueResult.failure(UnknownJobError(queue_id))
            return QueueResult.failure(_command_error(output, "fetching job status", queue_id))

        try:
            jobs = json.loads(output.stdout).get("Jobs") or {}
            if not jobs:
                return QueueResult.failure(UnknownJobError(queue_id))
            job = jobs.get(queue_id) or next(iter(jobs.values()))
            return QueueResult.success(JobStatus.from_pbs(queue_id, job))
        except (ValueError, AttributeError, TypeError) as e:
            logger.error("pbs_status_parse_failed", queue_id=queue_id, error=str(e))
            return QueueResult.failure(
                RemoteQueueError(f"Could not parse status for job {queue_id}: {e}", queue_id=queue_id)
            )

    async def count_enqueued_jobs(self) -> QueueResult[int]:
        """Number of jobs this user holds in the queue, in any state."""
        user = shlex.quote(self._settings.pbs_username)
        try:
            output = await self._transport.execute(f"qselect -u {user} | wc -l")
        except RemoteQueueError as e:
            return QueueResult.failure(e)
        if not output.ok:
            return QueueResult.failure(_command_error(output, "counting enqueued jobs"))
        return QueueResult.success(int(output.stdout.strip() or 0))

    async def fetch_max_queued(self) -> QueueResult[Optional[int]]:
        """The server's max_queued limit, or None when no limit is set."""
        try:
            output = await self._transport.execute("qmgr -c 'list server max_queued'")
        except RemoteQueueError as e:
            return QueueResult.failure(e)
        if not output.ok:
            return QueueResult.failure(_command_error(output, "reading max_queued"))

        try:
            value = parse_qmgr_value(output.stdout, "max_queued")
        except ValueError as e:
            return QueueResult.failure(RemoteQueueError(str(e)))
        if not value:
            return QueueResult.success(None)

        # e.g. [u:PBS_GENERIC=50000]; the first number is taken as the limit
        match = re.search(r"\d+", value)
        limit = int(match.group(0)) if match else 0
        return QueueResult.success(limit or None)

    async def test_connection(self) -> bool:
        try:
            output = await self._transport.execute('echo "PONG"')
        except RemoteQueueError as e:
            logger.error("pbs_connection_test_failed", error=str(e))
            return False
        return output.ok and output.stdout.startswith("PONG")
