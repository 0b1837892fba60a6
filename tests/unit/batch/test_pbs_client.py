"""Tests for the PBS queue client."""

import json
from pathlib import Path, PurePosixPath
from unittest.mock import AsyncMock, MagicMock

import pytest

from batch_analysis.batch.client import Hooks
from batch_analysis.batch.pbs import PBSClient, parse_qmgr_value, sanitize_job_name
from batch_analysis.batch.status import RemoteJobState
from batch_analysis.batch.transport import CommandOutput
from batch_analysis.errors import RemoteQueueError, RemoteQueueTimeoutError, UnknownJobError
from batch_analysis.jobs.types import ItemResult


def output(exit_code=0, stdout="", stderr=""):
    return CommandOutput(exit_code=exit_code, stdout=stdout, stderr=stderr)


@pytest.fixture
def transport():
    mock = MagicMock()
    mock.execute = AsyncMock(return_value=output())
    mock.upload = AsyncMock(return_value=output())
    return mock


@pytest.fixture
def client(settings, transport):
    return PBSClient(settings, transport)


class TestHelpers:
    def test_sanitize_job_name(self):
        assert sanitize_job_name("job 42/a") == "job_42_a"
        assert sanitize_job_name("42") == "42"

    def test_parse_qmgr_value(self):
        text = "Server pbs\n    max_queued = [u:PBS_GENERIC=5000]\n"
        assert parse_qmgr_value(text, "max_queued") == "[u:PBS_GENERIC=5000]"
        assert parse_qmgr_value("Server pbs\n", "max_queued") is None

    def test_parse_qmgr_value_bad_format(self):
        with pytest.raises(ValueError):
            parse_qmgr_value("garbage line", "max_queued")

    def test_remote_path(self, client):
        local = Path("/data/analysis_results/7/9c/uuid/3")
        assert client.remote_path(local) == PurePosixPath("/cluster/data/analysis_results/7/9c/uuid/3")

    def test_remote_path_outside_data_root(self, client):
        assert client.remote_path(Path("/scratch/x")) == PurePosixPath("/scratch/x")


class TestQsubCommand:
    def test_includes_resources_and_defaults(self, client):
        command = client.qsub_command(
            PurePosixPath("/cluster/data/out"),
            PurePosixPath("/cluster/data/out/.42"),
            "42",
            env={},
            resources={"ncpus": 2, "walltime": 4860},
        )
        assert command.startswith("cd /cluster/data/out && qsub -N 42 -P acoustics")
        assert "-l ncpus=2" in command
        assert "-l walltime=4860" in command
        # unrequested resources fall back to defaults
        assert "-l mem=16gb" in command
        assert "-h" not in command.split()
        assert command.endswith("/cluster/data/out/.42")

    def test_hold_queue_group_and_env(self, settings, transport):
        settings.pbs_default_queue = "workq"
        settings.pbs_primary_group = "acoustics-grp"
        client = PBSClient(settings, transport)
        command = client.qsub_command(
            PurePosixPath("/out"),
            PurePosixPath("/out/.1"),
            "1",
            env={"MODE": "fast"},
            resources={},
            hold=True,
        )
        parts = command.split()
        assert "-q" in parts and "workq" in parts
        assert "-h" in parts
        assert "group_list=acoustics-grp" in command
        assert "-v \"MODE='fast'\"" in command


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_returns_queue_id(self, client, transport):
        transport.execute = AsyncMock(side_effect=[output(), output(stdout="77.srv\n")])

        result = await client.submit(
            "echo hi",
            Path("/data/analysis_results/7/x"),
            "42",
            Hooks(start="start-hook", success="ok-hook", error="err-hook"),
            {},
            {"ncpus": 1},
        )

        assert result.ok
        assert result.value == "77.srv"

        uploaded_script, script_path = transport.upload.call_args[0]
        assert script_path == PurePosixPath("/cluster/data/analysis_results/7/x/.42")
        assert uploaded_script.startswith("#!/usr/bin/env bash")
        assert "start-hook || log" in uploaded_script
        assert "ok-hook || log" in uploaded_script
        assert "err-hook || log" in uploaded_script
        assert uploaded_script.rstrip().endswith("echo hi")

        chmod, qsub = (c[0][0] for c in transport.execute.call_args_list)
        assert chmod.startswith("chmod +x")
        assert "qsub -N 42" in qsub

    @pytest.mark.asyncio
    async def test_submit_failure_is_result(self, client, transport):
        transport.execute = AsyncMock(
            side_effect=[output(), output(exit_code=1, stderr="qsub: Illegal attribute")]
        )
        result = await client.submit("echo hi", Path("/data/x"), "1", Hooks(), {}, {})

        assert not result.ok
        assert isinstance(result.error, RemoteQueueError)
        assert "Illegal attribute" in str(result.error)

    @pytest.mark.asyncio
    async def test_submit_upload_failure(self, client, transport):
        transport.upload = AsyncMock(return_value=output(exit_code=1, stderr="disk full"))
        result = await client.submit("echo hi", Path("/data/x"), "1", Hooks(), {}, {})

        assert not result.ok
        assert "disk full" in str(result.error)
        transport.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_submit_timeout_is_transient(self, client, transport):
        transport.upload = AsyncMock(side_effect=RemoteQueueTimeoutError(timeout_s=30))
        result = await client.submit("echo hi", Path("/data/x"), "1", Hooks(), {}, {})

        assert not result.ok
        assert result.error.transient

    @pytest.mark.asyncio
    async def test_submit_empty_script(self, client):
        with pytest.raises(ValueError):
            await client.submit("  ", Path("/data/x"), "1", Hooks(), {}, {})


class TestCancelAndClear:
    @pytest.mark.asyncio
    async def test_cancel(self, client, transport):
        result = await client.cancel("77.srv")
        assert result.ok
        transport.execute.assert_awaited_once_with("qdel -x 77.srv")

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_is_success(self, client, transport):
        transport.execute = AsyncMock(
            return_value=output(exit_code=35, stderr="qdel: Unknown Job Id 77.srv")
        )
        result = await client.cancel("77.srv")
        assert result.ok

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_success(self, client, transport):
        transport.execute = AsyncMock(
            return_value=output(exit_code=1, stderr="qdel: Job has finished 77.srv")
        )
        assert (await client.cancel("77.srv")).ok

    @pytest.mark.asyncio
    async def test_cancel_other_failure(self, client, transport):
        transport.execute = AsyncMock(return_value=output(exit_code=1, stderr="permission denied"))
        result = await client.cancel("77.srv")
        assert not result.ok
        assert result.error.queue_id == "77.srv"

    @pytest.mark.asyncio
    async def test_clear_history_forces_purge(self, client, transport):
        result = await client.clear_history("77.srv")
        assert result.ok
        transport.execute.assert_awaited_once_with("qdel -x -W force 77.srv")


class TestFetchStatus:
    @pytest.mark.asyncio
    async def test_finished_job(self, client, transport):
        payload = {
            "Jobs": {
                "77.srv": {
                    "job_state": "F",
                    "Exit_status": 1,
                    "resources_used": {"walltime": "00:01:00", "mem": "1mb"},
                }
            }
        }
        transport.execute = AsyncMock(return_value=output(stdout=json.dumps(payload)))

        result = await client.fetch_status("77.srv")

        assert result.ok
        status = result.value
        assert status.state == RemoteJobState.FINISHED
        assert status.result == ItemResult.FAILED
        assert status.error == "Script failed. Exit status 1"
        assert status.used_walltime_seconds == 60
        assert status.used_memory_bytes == 1024**2
        transport.execute.assert_awaited_once_with("qstat -x -f -F JSON 77.srv")

    @pytest.mark.asyncio
    async def test_unknown_job(self, client, transport):
        transport.execute = AsyncMock(
            return_value=output(exit_code=153, stderr="qstat: Unknown Job Id 77.srv")
        )
        result = await client.fetch_status("77.srv")

        assert not result.ok
        assert isinstance(result.error, UnknownJobError)
        assert not result.error.transient

    @pytest.mark.asyncio
    async def test_empty_jobs_is_unknown(self, client, transport):
        transport.execute = AsyncMock(return_value=output(stdout='{"Jobs": {}}'))
        result = await client.fetch_status("77.srv")
        assert isinstance(result.error, UnknownJobError)

    @pytest.mark.asyncio
    async def test_unparseable_output(self, client, transport):
        transport.execute = AsyncMock(return_value=output(stdout="not json"))
        result = await client.fetch_status("77.srv")

        assert not result.ok
        assert not isinstance(result.error, UnknownJobError)
        assert "Could not parse" in str(result.error)


class TestCapacityQueries:
    @pytest.mark.asyncio
    async def test_count_enqueued_jobs(self, client, transport):
        transport.execute = AsyncMock(return_value=output(stdout="12\n"))
        result = await client.count_enqueued_jobs()
        assert result.value == 12
        transport.execute.assert_awaited_once_with("qselect -u pbsuser | wc -l")

    @pytest.mark.asyncio
    async def test_fetch_max_queued(self, client, transport):
        transport.execute = AsyncMock(
            return_value=output(stdout="Server pbs\n    max_queued = [u:PBS_GENERIC=5000]\n")
        )
        assert (await client.fetch_max_queued()).value == 5000

    @pytest.mark.asyncio
    async def test_fetch_max_queued_unset(self, client, transport):
        transport.execute = AsyncMock(return_value=output(stdout="Server pbs\n"))
        result = await client.fetch_max_queued()
        assert result.ok
        assert result.value is None

    @pytest.mark.asyncio
    async def test_test_connection(self, client, transport):
        transport.execute = AsyncMock(return_value=output(stdout="PONG\n"))
        assert await client.test_connection()

    @pytest.mark.asyncio
    async def test_test_connection_unreachable(self, client, transport):
        transport.execute = AsyncMock(side_effect=RemoteQueueError("down", transient=True))
        assert not await client.test_connection()
