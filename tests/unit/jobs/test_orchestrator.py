"""Tests for the job orchestrator."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from batch_analysis.batch.client import QueueResult
from batch_analysis.batch.status import JobStatus, RemoteJobState
from batch_analysis.errors import (
    IllegalTransitionError,
    RemoteQueueError,
    RemoteQueueTimeoutError,
    UnknownJobError,
    ValidationError,
)
from batch_analysis.jobs.orchestrator import JobOrchestrator
from batch_analysis.jobs.types import ItemEvent, ItemResult, ItemStatus, ItemTransition

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def progress():
    mock = MagicMock()
    mock.item_finished = AsyncMock()
    return mock


@pytest.fixture
def importer():
    mock = MagicMock()
    mock.import_results = AsyncMock()
    return mock


@pytest.fixture
def orchestrator(queue_client, builder, progress, importer):
    return JobOrchestrator(queue_client, builder, progress, importer, clock=lambda: FIXED_NOW)


def finished_status(exit_status=0, **kwargs):
    return JobStatus.from_pbs(
        "77.srv",
        {
            "job_state": "F",
            "Exit_status": exit_status,
            "resources_used": {"walltime": "00:02:00", "mem": "1024kb"},
            **kwargs,
        },
    )


def queued_item(make_item, **overrides):
    values = dict(
        status=ItemStatus.QUEUED,
        transition=None,
        queue_id="77.srv",
        attempts=1,
        queued_at=FIXED_NOW,
    )
    values.update(overrides)
    return make_item(**values)


class TestQueue:
    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, orchestrator, queue_client, builder, make_context, script):
        script.executable_command = "mkdir -p {output_dir}\ncp {source} {output_dir}/in"
        builder.command_values = lambda context: {"source": "/a/in.wav", "output_dir": "/tmp/out"}
        context = make_context()

        item = await orchestrator.queue(context)

        submitted_script = queue_client.submit.call_args[0][0]
        assert "mkdir -p /tmp/out\ncp /a/in.wav /tmp/out/in" in submitted_script
        assert item.queue_id == "77.srv"
        assert item.status == ItemStatus.QUEUED
        assert item.attempts == 1

    @pytest.mark.asyncio
    async def test_queue_records_submission(self, orchestrator, queue_client, make_context):
        context = make_context()

        item = await orchestrator.queue(context)

        assert item.queued_at == FIXED_NOW
        assert item.transition is None
        script, working_dir, job_name, hooks, env, resources = queue_client.submit.call_args[0]
        assert job_name == "42"
        assert resources["walltime"] == 4860
        assert '"status": "working"' in hooks.start

    @pytest.mark.asyncio
    async def test_queue_twice_is_illegal(self, orchestrator, queue_client, make_context):
        context = make_context()
        await orchestrator.queue(context)

        with pytest.raises(IllegalTransitionError):
            await orchestrator.queue(context)
        assert queue_client.submit.await_count == 1
        assert context.item.attempts == 1

    @pytest.mark.asyncio
    async def test_queue_refused_when_cancel_pending(self, orchestrator, queue_client, make_context):
        context = make_context(transition=ItemTransition.CANCEL)

        with pytest.raises(IllegalTransitionError):
            await orchestrator.queue(context)

        item = context.item
        assert item.status == ItemStatus.NEW
        assert item.transition == ItemTransition.CANCEL
        assert item.queue_id is None
        queue_client.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_submit_failure_changes_nothing(self, orchestrator, queue_client, make_context):
        queue_client.submit.return_value = QueueResult.failure(RemoteQueueTimeoutError(timeout_s=30))
        context = make_context()

        with pytest.raises(RemoteQueueTimeoutError):
            await orchestrator.queue(context)

        item = context.item
        assert item.status == ItemStatus.NEW
        assert item.queue_id is None
        assert item.queued_at is None
        assert item.attempts == 0
        assert item.transition == ItemTransition.QUEUE

    @pytest.mark.asyncio
    async def test_submit_failure_is_logged(self, orchestrator, queue_client, make_context):
        queue_client.submit.return_value = QueueResult.failure(RemoteQueueTimeoutError(timeout_s=30))

        with capture_logs() as logs, pytest.raises(RemoteQueueTimeoutError):
            await orchestrator.queue(make_context())

        failed = [entry for entry in logs if entry["event"] == "job_item_submit_failed"]
        assert len(failed) == 1
        assert failed[0]["item_id"] == 42
        assert failed[0]["item_event"] == "queue"

    @pytest.mark.asyncio
    async def test_validation_error_before_remote_call(self, orchestrator, queue_client, make_context, script):
        script.executable_command = "run {output_dir}"
        with pytest.raises(ValidationError):
            await orchestrator.queue(make_context())
        queue_client.submit.assert_not_called()


class TestWork:
    def test_work_from_queued(self, orchestrator, make_item):
        item = queued_item(make_item)
        orchestrator.work(item)
        assert item.status == ItemStatus.WORKING
        assert item.work_started_at == FIXED_NOW

    def test_work_from_new_is_illegal(self, orchestrator, make_item):
        with pytest.raises(IllegalTransitionError):
            orchestrator.work(make_item())

    def test_work_twice_is_illegal(self, orchestrator, make_item):
        item = queued_item(make_item)
        orchestrator.work(item)
        with pytest.raises(IllegalTransitionError):
            orchestrator.work(item)


class TestFinish:
    @pytest.mark.asyncio
    async def test_finish_success(self, orchestrator, queue_client, progress, importer, make_item):
        queue_client.fetch_status.return_value = QueueResult.success(finished_status())
        item = queued_item(make_item, status=ItemStatus.WORKING, transition=ItemTransition.FINISH)

        await orchestrator.finish(item)

        assert item.status == ItemStatus.FINISHED
        assert item.result == ItemResult.SUCCESS
        assert item.error is None
        assert item.queue_id is None
        assert item.transition is None
        assert item.finished_at == FIXED_NOW
        assert item.used_walltime_seconds == 120
        assert item.used_memory_bytes == 1024**2
        queue_client.clear_history.assert_awaited_once_with("77.srv")
        # Collaborators run only once the caller has saved the item
        progress.item_finished.assert_not_called()
        importer.import_results.assert_not_called()

    @pytest.mark.asyncio
    async def test_finish_failed_records_error(self, orchestrator, queue_client, importer, make_item):
        queue_client.fetch_status.return_value = QueueResult.success(finished_status(exit_status=-29))
        item = queued_item(make_item, status=ItemStatus.WORKING)

        await orchestrator.finish(item)

        assert item.result == ItemResult.KILLED
        assert item.error == "job exec failed due to exceeding walltime"
        importer.import_results.assert_not_called()

    @pytest.mark.asyncio
    async def test_finish_with_prefetched_status(self, orchestrator, queue_client, make_item):
        item = queued_item(make_item)

        await orchestrator.finish(item, finished_status(exit_status=2))

        queue_client.fetch_status.assert_not_called()
        assert item.result == ItemResult.FAILED
        assert item.error == "Script failed. Exit status 2"

    @pytest.mark.asyncio
    async def test_finish_before_remote_finished(self, orchestrator, queue_client, progress, make_item):
        running = JobStatus("77.srv", RemoteJobState.RUNNING)
        queue_client.fetch_status.return_value = QueueResult.success(running)
        item = queued_item(make_item, status=ItemStatus.WORKING, transition=ItemTransition.FINISH)

        with pytest.raises(RemoteQueueError) as exc_info:
            await orchestrator.finish(item)

        assert exc_info.value.transient
        assert item.status == ItemStatus.WORKING
        assert item.queue_id == "77.srv"
        assert item.transition == ItemTransition.FINISH
        queue_client.clear_history.assert_not_called()
        progress.item_finished.assert_not_called()

    @pytest.mark.asyncio
    async def test_prefetched_status_must_be_final(self, orchestrator, make_item):
        item = queued_item(make_item)
        with pytest.raises(RemoteQueueError):
            await orchestrator.finish(item, JobStatus("77.srv", RemoteJobState.QUEUED))
        assert item.status == ItemStatus.QUEUED

    @pytest.mark.asyncio
    async def test_status_query_failure_propagates(self, orchestrator, queue_client, make_item):
        queue_client.fetch_status.return_value = QueueResult.failure(
            RemoteQueueError("ssh failed", transient=True)
        )
        item = queued_item(make_item)
        with pytest.raises(RemoteQueueError, match="ssh failed"):
            await orchestrator.finish(item)
        assert item.status == ItemStatus.QUEUED

    @pytest.mark.asyncio
    async def test_unknown_job_finishes_as_failed(self, orchestrator, queue_client, make_item):
        queue_client.fetch_status.return_value = QueueResult.failure(UnknownJobError("77.srv"))
        item = queued_item(make_item)

        await orchestrator.finish(item)

        assert item.status == ItemStatus.FINISHED
        assert item.result == ItemResult.FAILED
        assert item.error == "Remote queue has no record of job 77.srv"
        assert item.queue_id is None

    @pytest.mark.asyncio
    async def test_finish_is_idempotent(self, orchestrator, queue_client, progress, make_item):
        queue_client.fetch_status.return_value = QueueResult.success(finished_status())
        item = queued_item(make_item)
        await orchestrator.finish(item)
        snapshot = dict(vars(item))

        await orchestrator.finish(item)

        assert vars(item) == snapshot
        assert queue_client.fetch_status.await_count == 1
        assert queue_client.clear_history.await_count == 1

    @pytest.mark.asyncio
    async def test_history_clear_failure_does_not_block(self, orchestrator, queue_client, make_item):
        queue_client.fetch_status.return_value = QueueResult.success(finished_status())
        queue_client.clear_history.return_value = QueueResult.failure(RemoteQueueError("busy"))
        item = queued_item(make_item)

        await orchestrator.finish(item)

        assert item.status == ItemStatus.FINISHED
        assert item.queue_id is None

    @pytest.mark.asyncio
    async def test_empty_status_reply_is_transient(self, orchestrator, queue_client, make_item):
        queue_client.fetch_status.return_value = QueueResult.success(None)
        item = queued_item(make_item)

        with pytest.raises(RemoteQueueError, match="No status returned") as exc_info:
            await orchestrator.finish(item)

        assert exc_info.value.transient
        assert exc_info.value.queue_id == "77.srv"
        assert item.status == ItemStatus.QUEUED
        assert item.queue_id == "77.srv"

    @pytest.mark.asyncio
    async def test_remote_cancellation_skips_usage(self, orchestrator, make_item):
        item = queued_item(make_item)
        await orchestrator.finish(item, finished_status(exit_status=271))

        assert item.result == ItemResult.CANCELLED
        assert item.used_walltime_seconds is None
        assert item.used_memory_bytes is None

    @pytest.mark.asyncio
    async def test_finish_from_new_is_illegal(self, orchestrator, make_item):
        with pytest.raises(IllegalTransitionError):
            await orchestrator.finish(make_item())


class TestNotifyFinished:
    @pytest.mark.asyncio
    async def test_success_updates_progress_and_imports(self, orchestrator, progress, importer, make_item):
        item = make_item(status=ItemStatus.FINISHED, transition=None, result=ItemResult.SUCCESS)

        await orchestrator.notify_finished(item)

        progress.item_finished.assert_awaited_once_with(item)
        importer.import_results.assert_awaited_once_with(item)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [ItemResult.FAILED, ItemResult.KILLED, ItemResult.CANCELLED])
    async def test_unsuccessful_only_updates_progress(self, orchestrator, progress, importer, make_item, result):
        item = make_item(status=ItemStatus.FINISHED, transition=None, result=result)

        await orchestrator.notify_finished(item)

        progress.item_finished.assert_awaited_once_with(item)
        importer.import_results.assert_not_called()

    @pytest.mark.asyncio
    async def test_collaborator_failure_is_logged(self, orchestrator, progress, importer, make_item):
        progress.item_finished.side_effect = RuntimeError("db down")
        importer.import_results.side_effect = RuntimeError("db down")
        item = make_item(status=ItemStatus.FINISHED, transition=None, result=ItemResult.SUCCESS)

        with capture_logs() as logs:
            await orchestrator.notify_finished(item)

        events = {entry["event"] for entry in logs}
        assert {"progress_update_failed", "result_import_trigger_failed"} <= events


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_queued(self, orchestrator, queue_client, progress, make_item):
        item = queued_item(make_item, transition=ItemTransition.CANCEL)

        await orchestrator.cancel(item)

        assert item.status == ItemStatus.FINISHED
        assert item.result == ItemResult.CANCELLED
        assert item.queue_id is None
        assert item.error is None
        assert item.used_walltime_seconds is None
        assert item.used_memory_bytes is None
        assert item.transition is None
        assert item.finished_at == FIXED_NOW
        queue_client.cancel.assert_awaited_once_with("77.srv")
        queue_client.clear_history.assert_awaited_once_with("77.srv")
        progress.item_finished.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_new_has_no_remote_calls(self, orchestrator, queue_client, make_item):
        item = make_item(transition=ItemTransition.CANCEL)

        await orchestrator.cancel(item)

        assert item.result == ItemResult.CANCELLED
        queue_client.cancel.assert_not_called()
        queue_client.clear_history.assert_not_called()

    @pytest.mark.asyncio
    async def test_remote_failure_never_blocks(self, orchestrator, queue_client, make_item):
        queue_client.cancel.return_value = QueueResult.failure(RemoteQueueTimeoutError())
        queue_client.clear_history.return_value = QueueResult.failure(RemoteQueueTimeoutError())
        item = queued_item(make_item, status=ItemStatus.WORKING)

        await orchestrator.cancel(item)

        assert item.status == ItemStatus.FINISHED
        assert item.result == ItemResult.CANCELLED
        assert item.queue_id is None

    @pytest.mark.asyncio
    async def test_cancel_finished_is_illegal(self, orchestrator, make_item):
        item = make_item(status=ItemStatus.FINISHED, result=ItemResult.SUCCESS, transition=None)
        with pytest.raises(IllegalTransitionError):
            await orchestrator.cancel(item)


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_resubmits_and_clears_outcome(self, orchestrator, queue_client, make_context):
        context = make_context(
            status=ItemStatus.FINISHED,
            transition=ItemTransition.RETRY,
            result=ItemResult.FAILED,
            error="Script failed. Exit status 1",
            attempts=1,
            used_walltime_seconds=60,
            used_memory_bytes=1024,
            work_started_at=FIXED_NOW,
            finished_at=FIXED_NOW,
        )
        queue_client.submit.return_value = QueueResult.success("78.srv")

        item = await orchestrator.retry(context)

        assert item.status == ItemStatus.QUEUED
        assert item.queue_id == "78.srv"
        assert item.attempts == 2
        assert item.result is None
        assert item.error is None
        assert item.used_walltime_seconds is None
        assert item.work_started_at is None
        assert item.finished_at is None
        assert item.transition is None

    @pytest.mark.asyncio
    async def test_retry_clears_import_request(self, orchestrator, make_context):
        context = make_context(
            status=ItemStatus.FINISHED,
            transition=ItemTransition.RETRY,
            result=ItemResult.SUCCESS,
            import_success=False,
            import_requested_at=FIXED_NOW,
        )

        item = await orchestrator.retry(context)

        assert item.import_success is None
        assert item.import_requested_at is None

    @pytest.mark.asyncio
    async def test_retry_failure_keeps_outcome(self, orchestrator, queue_client, make_context):
        queue_client.submit.return_value = QueueResult.failure(RemoteQueueError("qsub failed"))
        context = make_context(
            status=ItemStatus.FINISHED,
            transition=ItemTransition.RETRY,
            result=ItemResult.FAILED,
            error="boom",
        )

        with pytest.raises(RemoteQueueError):
            await orchestrator.retry(context)

        assert context.item.status == ItemStatus.FINISHED
        assert context.item.result == ItemResult.FAILED
        assert context.item.error == "boom"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ItemStatus.NEW, ItemStatus.QUEUED, ItemStatus.WORKING])
    async def test_retry_only_from_finished(self, orchestrator, make_context, status):
        with pytest.raises(IllegalTransitionError):
            await orchestrator.retry(make_context(status=status))


class TestProcess:
    @pytest.mark.asyncio
    async def test_queue_marker(self, orchestrator, make_context):
        context = make_context()
        assert await orchestrator.process(context) == ItemEvent.QUEUE
        assert context.item.status == ItemStatus.QUEUED
        assert context.item.transition is None

    @pytest.mark.asyncio
    async def test_retry_marker_on_finished_item(self, orchestrator, make_context):
        context = make_context(
            status=ItemStatus.FINISHED, transition=ItemTransition.RETRY, result=ItemResult.KILLED
        )
        assert await orchestrator.process(context) == ItemEvent.RETRY
        assert context.item.status == ItemStatus.QUEUED

    @pytest.mark.asyncio
    async def test_queue_marker_on_queued_item_is_cleared(self, orchestrator, queue_client, make_context, make_item):
        context = make_context(item=queued_item(make_item, transition=ItemTransition.QUEUE))
        assert await orchestrator.process(context) is None
        assert context.item.transition is None
        queue_client.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_marker(self, orchestrator, make_context, make_item):
        context = make_context(item=queued_item(make_item, transition=ItemTransition.CANCEL))
        assert await orchestrator.process(context) == ItemEvent.CANCEL
        assert context.item.result == ItemResult.CANCELLED

    @pytest.mark.asyncio
    async def test_finish_marker(self, orchestrator, queue_client, make_context, make_item):
        queue_client.fetch_status.return_value = QueueResult.success(finished_status())
        context = make_context(item=queued_item(make_item, transition=ItemTransition.FINISH))
        assert await orchestrator.process(context) == ItemEvent.FINISH
        assert context.item.status == ItemStatus.FINISHED

    @pytest.mark.asyncio
    async def test_inapplicable_marker_is_cleared(self, orchestrator, queue_client, make_context):
        context = make_context(
            status=ItemStatus.FINISHED, transition=ItemTransition.CANCEL, result=ItemResult.SUCCESS
        )
        assert await orchestrator.process(context) is None
        assert context.item.transition is None
        assert context.item.result == ItemResult.SUCCESS
        queue_client.cancel.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_marker(self, orchestrator, make_context):
        assert await orchestrator.process(make_context(transition=None)) is None

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_marker(self, orchestrator, queue_client, make_context):
        queue_client.submit.return_value = QueueResult.failure(RemoteQueueError("down", transient=True))
        context = make_context()
        with pytest.raises(RemoteQueueError):
            await orchestrator.process(context)
        assert context.item.transition == ItemTransition.QUEUE
