"""Assembles the job script submitted for a job item.

The generated script is self-contained: it downloads the source audio,
writes the config file, creates scratch directories, then runs the
script's templated command. Status callbacks are attached as hooks.
"""

import base64
import secrets
import shlex
import string
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from batch_analysis.batch import templater
from batch_analysis.batch.client import Hooks
from batch_analysis.batch.resources import BASE_RESOURCES, MINIMUM_RESOURCES
from batch_analysis.batch.tokens import ITEM_INVOKE, MEDIA_ORIGINAL, TokenSigner
from batch_analysis.config import Settings
from batch_analysis.errors import ValidationError
from batch_analysis.jobs.models import AudioRecording, ItemContext, JobItem

# Cleaned by PBS after every job
SCRATCH_DIR = PurePosixPath("$TMPDIR")
CONFIG_DIR = SCRATCH_DIR / "config"
SOURCE_DIR = SCRATCH_DIR / "source"
TEMP_DIR = SCRATCH_DIR / "tmp"

# Directory the job is submitted from; results are written here
WORKING_DIR = PurePosixPath("$PBS_O_WORKDIR")

DOWNLOAD_RETRY_DELAY_S = 180
DOWNLOAD_ATTEMPTS = 6

DEFAULT_CONFIG_NAME = "config"
TOKEN_SUBJECT = "batch_analysis"

STATUS_WORKING = "working"
STATUS_SUCCESSFUL = "successful"
STATUS_FAILED = "failed"

SCRIPT_TEMPLATE = """# download source audio
log "Downloading source audio..."
mkdir -p "{source_dir}"
{download}

# emit config file
log "Writing config file..."
mkdir -p "{config_dir}"
{config}

# make temp dir
log "Creating temp dir..."
mkdir -p "{temp_dir}"

# switch back to output dir
log "Switching to output dir {output_dir}..."
cd "{output_dir}"

log "Running command..."
{command}

log "Done."
"""


@dataclass
class Submission:
    """Arguments for ``QueueClient.submit``."""

    script: str
    working_directory: Path
    job_name: str
    hooks: Hooks
    resources: dict[str, int]
    env: dict[str, str] = field(default_factory=dict)


def config_heredoc(config: str, name: str) -> str:
    """Shell that writes ``config`` to the config dir.

    The content is base64 encoded and the heredoc delimiter is random, so
    nothing in the config can break out into the script.
    """
    if not config:
        return ""

    encoded = base64.encodebytes(config.encode("utf-8")).decode("ascii").rstrip("\n")
    alphabet = string.ascii_letters + string.digits
    delimiter = "CONFIG" + "".join(secrets.choice(alphabet) for _ in range(64))
    target = f'"{CONFIG_DIR}/{name}"'
    return f"cat <<-{delimiter} | base64 --decode > {target}\n{encoded}\n{delimiter}"


class SubmissionBuilder:
    """Builds the submission for a job item."""

    def __init__(self, settings: Settings, signer: TokenSigner):
        self._settings = settings
        self._signer = signer

    @property
    def _api_base(self) -> str:
        return self._settings.api_base_url.rstrip("/")

    def item_status_url(self, item: JobItem) -> str:
        return f"{self._api_base}/analysis_jobs/{item.analysis_job_id}/items/{item.id}"

    def media_url(self, recording: AudioRecording) -> str:
        return f"{self._api_base}/audio_recordings/{recording.id}/media.{recording.extension}"

    def status_hook(self, item: JobItem, status: str) -> str:
        resource, action = ITEM_INVOKE
        token = self._signer.create(TOKEN_SUBJECT, resource, action, scope=str(item.id))
        body = f'{{"status": "{status}"}}'
        return " ".join(
            [
                "curl",
                "--silent",
                "--show-error",
                "--header 'Accept: application/json'",
                "--header 'Content-Type: application/json'",
                f"--header 'Authorization: Bearer {token}'",
                "--request PUT",
                f"--data '{body}'",
                "--retry 3",
                "--fail-with-body",
                "--write-out '\\nStatus update: %{http_code} in %{time_total} seconds\\n'",
                shlex.quote(self.item_status_url(item)),
                "|| true",
            ]
        )

    def download_command(self, recording: AudioRecording) -> str:
        resource, action = MEDIA_ORIGINAL
        token = self._signer.create(TOKEN_SUBJECT, resource, action, scope=str(recording.id))
        return " ".join(
            [
                "curl",
                "--silent",
                "--show-error",
                f"--header 'Authorization: Bearer {token}'",
                f'--output-dir "{SOURCE_DIR}"',
                f"--output {shlex.quote(recording.friendly_name)}",
                "--http1.1",
                f"--retry {DOWNLOAD_ATTEMPTS}",
                "--retry-all-errors",
                "--fail",
                f"--retry-delay {DOWNLOAD_RETRY_DELAY_S}",
                "--location",
                "--write-out '\\nFile downloaded: %{http_code} %{filename_effective} "
                "%{size_download} bytes %{time_total} seconds\\n'",
                shlex.quote(self.media_url(recording)),
            ]
        )

    def command_values(self, context: ItemContext) -> dict[str, Any]:
        recording = context.recording
        if recording is None or context.script is None:
            raise ValidationError(f"Job item {context.item.id} is missing its recording or script")
        source_name = recording.friendly_name
        config_name = context.script.executable_settings_name or DEFAULT_CONFIG_NAME
        return {
            templater.SOURCE_DIR: SOURCE_DIR,
            templater.CONFIG_DIR: CONFIG_DIR,
            templater.OUTPUT_DIR: WORKING_DIR,
            templater.TEMP_DIR: TEMP_DIR,
            templater.SOURCE_BASENAME: source_name,
            templater.CONFIG_BASENAME: config_name,
            templater.SOURCE: SOURCE_DIR / source_name,
            templater.CONFIG: CONFIG_DIR / config_name,
            templater.LATITUDE: recording.latitude,
            templater.LONGITUDE: recording.longitude,
            templater.TIMESTAMP: recording.recorded_date,
            templater.ID: recording.id,
            templater.UUID: recording.uuid,
        }

    def build(self, context: ItemContext) -> Submission:
        """Build everything needed to submit ``context.item``.

        Raises:
            ValidationError: If the command template is unusable (unknown
                placeholders, unsafe characters, config placeholders with no
                settings) or the resource request is invalid. Nothing remote
                has happened yet.
        """
        item, recording, script = context.item, context.recording, context.script
        if recording is None or script is None:
            raise ValidationError(f"Job item {item.id} is missing its recording or script")

        problems = templater.validate_executable_command(
            script.executable_command, has_settings=context.settings is not None
        )
        if problems:
            raise ValidationError("; ".join(problems))

        command = templater.format_command(script.executable_command, self.command_values(context))
        config_name = script.executable_settings_name or DEFAULT_CONFIG_NAME

        body = SCRIPT_TEMPLATE.format(
            source_dir=SOURCE_DIR,
            config_dir=CONFIG_DIR,
            temp_dir=TEMP_DIR,
            output_dir=WORKING_DIR,
            download=self.download_command(recording),
            config=config_heredoc(context.settings or "", config_name),
            command=command,
        )

        resources = script.resources.combine(BASE_RESOURCES).calculate(
            recording_duration=recording.duration_seconds,
            recording_size=recording.data_length_bytes,
            minimums=MINIMUM_RESOURCES,
        )

        return Submission(
            script=body,
            working_directory=item.results_path(self._settings.results_root, recording.uuid),
            job_name=str(item.id),
            hooks=Hooks(
                start=self.status_hook(item, STATUS_WORKING),
                success=self.status_hook(item, STATUS_SUCCESSFUL),
                error=self.status_hook(item, STATUS_FAILED),
            ),
            resources=resources,
        )
