"""Job item lifecycle.

The orchestrator performs the slow half of every transition: it talks to
the remote queue and mutates the in-memory ``JobItem``. Loading and saving
the item is the caller's job (the worker or a router).

Usage:
    orchestrator = JobOrchestrator(client, builder, progress, importer)

    item = await orchestrator.queue(context)    # submits, stores queue_id
    orchestrator.work(item)                     # no remote call
    await orchestrator.finish(item)             # fetches status itself
    await orchestrator.finish(item, status)     # reuses a finished status
    # ... caller saves the item, then
    await orchestrator.notify_finished(item)
"""

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from batch_analysis.batch.client import QueueClient
from batch_analysis.batch.status import JobStatus
from batch_analysis.errors import RemoteQueueError, UnknownJobError
from batch_analysis.jobs.collaborators import ProgressAggregator, ResultImporter
from batch_analysis.jobs.models import ItemContext, JobItem
from batch_analysis.jobs.state_machine import TRANSITIONS, may_fire, target_state
from batch_analysis.jobs.submission import SubmissionBuilder
from batch_analysis.jobs.types import ItemEvent, ItemResult, ItemStatus, ItemTransition

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobOrchestrator:
    """Drives job items through the state machine."""

    def __init__(
        self,
        client: QueueClient,
        builder: SubmissionBuilder,
        progress: ProgressAggregator,
        importer: ResultImporter,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._client = client
        self._builder = builder
        self._progress = progress
        self._importer = importer
        self._clock = clock

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def queue(self, context: ItemContext) -> JobItem:
        """Submit a new item to the remote queue.

        Raises:
            IllegalTransitionError: If the item is not new or a cancel is pending
            ValidationError: If the script or resources are invalid
            RemoteQueueError: If submission fails; the item is unchanged
        """
        item = context.item
        target_state(item, ItemEvent.QUEUE)
        await self._enter_queued(context, ItemEvent.QUEUE)
        return item

    async def retry(self, context: ItemContext) -> JobItem:
        """Resubmit a finished item.

        The previous outcome is only discarded once the new submission
        has been accepted.
        """
        item = context.item
        target_state(item, ItemEvent.RETRY)
        await self._enter_queued(context, ItemEvent.RETRY)

        item.error = None
        item.result = None
        item.used_walltime_seconds = None
        item.used_memory_bytes = None
        item.work_started_at = None
        item.finished_at = None
        item.import_success = None
        item.import_requested_at = None
        return item

    def work(self, item: JobItem) -> JobItem:
        """Record that the remote job started running."""
        item.status = target_state(item, ItemEvent.WORK)
        if item.work_started_at is None:
            item.work_started_at = self._clock()
        logger.info("job_item_working", item_id=item.id, queue_id=item.queue_id)
        return item

    async def finish(self, item: JobItem, status: Optional[JobStatus] = None) -> JobItem:
        """Finalize an item from its remote outcome.

        ``status`` may be passed by a caller that has already fetched it in
        the same unit of work and seen the remote job finished. Otherwise
        the status is queried here. Collaborators are not notified; the
        caller calls ``notify_finished`` once the item has been saved.

        Raises:
            IllegalTransitionError: If the item is new
            RemoteQueueError: If the remote job has not finished yet or the
                status query fails; the item is unchanged
        """
        target_state(item, ItemEvent.FINISH)
        log = logger.bind(item_id=item.id, queue_id=item.queue_id)

        if item.status == ItemStatus.FINISHED and item.queue_id is None:
            # Duplicate signal for an item that is already fully finished
            item.clear_transition(ItemTransition.FINISH)
            log.debug("job_item_already_finished")
            return item

        if item.queue_id is not None and item.result != ItemResult.CANCELLED:
            if status is None:
                status = await self._fetch_final_status(item.queue_id)
            elif not status.is_final:
                raise RemoteQueueError(
                    f"Job {item.queue_id} has not finished (state {status.state.value})",
                    queue_id=item.queue_id,
                    transient=True,
                )
        else:
            status = None

        item.status = ItemStatus.FINISHED
        if item.finished_at is None:
            item.finished_at = self._clock()

        if status is not None:
            self._apply_remote_status(item, status)
        if item.result is None:
            item.result = ItemResult.FAILED
            item.append_error("Job finished without a remote outcome")

        if item.queue_id is not None:
            await self._clear_remote_history(item.queue_id)
            item.queue_id = None

        item.clear_transition(ItemTransition.FINISH)
        log.info("job_item_finished", result=item.result.value, error=item.error)
        return item

    async def notify_finished(self, item: JobItem) -> None:
        """Tell collaborators about a finished item that has been persisted.

        Progress is always recomputed; results are imported on success only.
        Collaborator failures are logged and never propagate.
        """
        await self._notify_progress(item)
        if item.result == ItemResult.SUCCESS:
            await self._notify_importer(item)

    async def cancel(self, item: JobItem) -> JobItem:
        """Cancel an item. Local state always ends up finished/cancelled.

        Remote failures are logged and never block finalization.
        """
        target_state(item, ItemEvent.CANCEL)
        log = logger.bind(item_id=item.id, queue_id=item.queue_id)

        if item.queue_id is not None:
            result = await self._client.cancel(item.queue_id)
            if not result.ok:
                log.warning("remote_cancel_failed", error=str(result.error))
            await self._clear_remote_history(item.queue_id)

        item.status = ItemStatus.FINISHED
        item.result = ItemResult.CANCELLED
        item.queue_id = None
        if item.finished_at is None:
            item.finished_at = self._clock()
        item.clear_transition(ItemTransition.CANCEL)
        log.info("job_item_cancelled")
        return item

    # ------------------------------------------------------------------
    # Marker dispatch
    # ------------------------------------------------------------------

    async def process(self, context: ItemContext) -> Optional[ItemEvent]:
        """Run the slow half for the item's pending transition marker.

        Returns the event that fired, or None when the marker no longer
        applies (it is then cleared).
        """
        item = context.item
        marker = item.transition
        log = logger.bind(item_id=item.id, transition=marker.value if marker else None)

        if marker is None:
            return None

        event: Optional[ItemEvent] = None
        if marker in (ItemTransition.QUEUE, ItemTransition.RETRY):
            if may_fire(item, ItemEvent.QUEUE):
                event = ItemEvent.QUEUE
            elif may_fire(item, ItemEvent.RETRY):
                event = ItemEvent.RETRY
            elif item.status == ItemStatus.QUEUED:
                # Submitted by an earlier run that failed to clear the marker
                log.debug("job_item_already_queued")
                item.clear_transition(marker)
                return None
        elif marker == ItemTransition.CANCEL and may_fire(item, ItemEvent.CANCEL):
            event = ItemEvent.CANCEL
        elif marker == ItemTransition.FINISH and may_fire(item, ItemEvent.FINISH):
            event = ItemEvent.FINISH

        if event is None:
            log.warning("transition_not_applicable", status=item.status.value)
            item.clear_transition(marker)
            return None

        if event == ItemEvent.QUEUE:
            await self.queue(context)
        elif event == ItemEvent.RETRY:
            await self.retry(context)
        elif event == ItemEvent.CANCEL:
            await self.cancel(item)
        else:
            await self.finish(item)

        item.clear_transition(marker)
        return event

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _enter_queued(self, context: ItemContext, event: ItemEvent) -> None:
        item = context.item
        submission = self._builder.build(context)

        result = await self._client.submit(
            submission.script,
            submission.working_directory,
            submission.job_name,
            submission.hooks,
            submission.env,
            submission.resources,
        )
        if not result.ok:
            logger.warning(
                "job_item_submit_failed",
                item_id=item.id,
                item_event=event.value,
                error=str(result.error),
            )
            raise result.error  # type: ignore[misc]

        item.queue_id = result.value
        item.status = TRANSITIONS[event].target
        item.queued_at = self._clock()
        item.attempts += 1
        item.clear_transition(TRANSITIONS[event].clears_marker)
        logger.info(
            "job_item_queued",
            item_id=item.id,
            queue_id=item.queue_id,
            attempts=item.attempts,
            resources=submission.resources,
        )

    async def _fetch_final_status(self, queue_id: str) -> JobStatus:
        result = await self._client.fetch_status(queue_id)
        if not result.ok:
            if isinstance(result.error, UnknownJobError):
                return JobStatus.unknown(queue_id)
            raise result.error  # type: ignore[misc]

        status = result.value
        if status is None:
            raise RemoteQueueError(
                f"No status returned for job {queue_id}", queue_id=queue_id, transient=True
            )
        if not status.is_final:
            raise RemoteQueueError(
                f"Job {queue_id} has not finished (state {status.state.value})",
                queue_id=queue_id,
                transient=True,
            )
        return status

    @staticmethod
    def _apply_remote_status(item: JobItem, status: JobStatus) -> None:
        if status.result is not None:
            item.result = status.result
        if item.result == ItemResult.CANCELLED:
            return
        item.used_walltime_seconds = status.used_walltime_seconds or item.used_walltime_seconds
        item.used_memory_bytes = status.used_memory_bytes or item.used_memory_bytes
        item.append_error(status.error)

    async def _clear_remote_history(self, queue_id: str) -> None:
        result = await self._client.clear_history(queue_id)
        if not result.ok:
            logger.warning("remote_history_clear_failed", queue_id=queue_id, error=str(result.error))

    async def _notify_progress(self, item: JobItem) -> None:
        try:
            await self._progress.item_finished(item)
        except Exception as e:
            logger.error("progress_update_failed", item_id=item.id, error=str(e))

    async def _notify_importer(self, item: JobItem) -> None:
        try:
            await self._importer.import_results(item)
        except Exception as e:
            logger.error("result_import_trigger_failed", item_id=item.id, error=str(e))
