"""Shared fixtures for unit tests."""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest

from batch_analysis.batch.client import QueueResult
from batch_analysis.batch.resources import DynamicResourceList, Polynomial, ScalingProperty
from batch_analysis.batch.tokens import TokenSigner
from batch_analysis.config import Settings
from batch_analysis.core.resilience import reset_circuits
from batch_analysis.jobs.models import AudioRecording, ItemContext, JobItem, Script
from batch_analysis.jobs.submission import SubmissionBuilder

RECORDING_UUID = UUID("9c5b1a4e-3f6d-4d8e-a2b1-0c7e5f4d3a21")
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit state is process global; failures in one test must not trip the next."""
    reset_circuits()
    yield
    reset_circuits()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        api_base_url="https://api.example.org/",
        auth_token_secret="test-secret",
        pbs_host="pbs.example.org",
        pbs_username="pbsuser",
        pbs_default_project="acoustics",
        local_data_root=Path("/data"),
        cluster_data_root=Path("/cluster/data"),
        results_root=Path("/data/analysis_results"),
    )


@pytest.fixture
def signer():
    return TokenSigner("test-secret", 3600)


@pytest.fixture
def builder(settings, signer):
    return SubmissionBuilder(settings, signer)


@pytest.fixture
def make_item():
    def _make(**overrides) -> JobItem:
        values = dict(id=42, analysis_job_id=7, audio_recording_id=1234, script_id=3)
        values.update(overrides)
        return JobItem(**values)

    return _make


@pytest.fixture
def recording():
    return AudioRecording(
        id=1234,
        uuid=RECORDING_UUID,
        duration_seconds=7200.0,
        data_length_bytes=345_600_000,
        recorded_date=datetime(2025, 10, 4, 6, 30, tzinfo=timezone.utc),
        media_type="audio/mpeg",
        site_name="Creek Bed",
        latitude=-27.47,
        longitude=153.02,
    )


@pytest.fixture
def script():
    return Script(
        id=3,
        executable_command="analyse {source} --config {config} --out {output_dir}",
        executable_settings="threshold: 0.5\n",
        executable_settings_name="settings.yml",
        resources=DynamicResourceList(
            ncpus=Decimal(2),
            walltime=Polynomial((Decimal("0.5"), Decimal(60)), ScalingProperty.DURATION),
        ),
    )


@pytest.fixture
def make_context(make_item, recording, script):
    def _make(item=None, **item_overrides) -> ItemContext:
        return ItemContext(
            item=item or make_item(**item_overrides),
            recording=recording,
            script=script,
        )

    return _make


@pytest.fixture
def queue_client():
    """QueueClient double whose calls all succeed."""
    client = MagicMock()
    client.submit = AsyncMock(return_value=QueueResult.success("77.srv"))
    client.cancel = AsyncMock(return_value=QueueResult.success(""))
    client.fetch_status = AsyncMock()
    client.clear_history = AsyncMock(return_value=QueueResult.success(""))
    client.count_enqueued_jobs = AsyncMock(return_value=QueueResult.success(0))
    client.fetch_max_queued = AsyncMock(return_value=QueueResult.success(None))
    return client


@pytest.fixture
def mock_pool():
    """asyncpg pool double; the connection is ``mock_pool.conn``."""
    conn = AsyncMock()
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.conn = conn
    return pool
