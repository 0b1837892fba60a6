"""Transition worker - claims marked job items and runs the slow half."""

import asyncio
import os
import random
import socket
import time
import traceback
from typing import Callable, Optional

import structlog
from prometheus_client import Counter, Gauge

from batch_analysis import __version__
from batch_analysis.batch.status import JobStatus
from batch_analysis.config import Settings, get_settings
from batch_analysis.errors import IllegalTransitionError, UnknownJobError, ValidationError
from batch_analysis.jobs.models import JobItem
from batch_analysis.jobs.orchestrator import JobOrchestrator
from batch_analysis.jobs.types import ItemEvent, ItemStatus, ItemTransition
from batch_analysis.repositories.job_items import JobItemRepository

logger = structlog.get_logger(__name__)

# Markers that never add a job to the remote queue; claimable while it is full
OTHER_TRANSITIONS = (ItemTransition.CANCEL, ItemTransition.FINISH)

# =============================================================================
# Prometheus Metrics
# =============================================================================

TRANSITIONS_TOTAL = Counter(
    "batch_analysis_transitions_total",
    "Transition markers processed by workers",
    ["transition", "outcome"],  # processed, cleared, failed, abandoned
)
ITEMS_RECONCILED_TOTAL = Counter(
    "batch_analysis_items_reconciled_total",
    "Stale items checked against the remote queue",
    ["outcome"],  # finished, working, unchanged, failed
)
ENQUEUE_CAPACITY_FREE = Gauge(
    "batch_analysis_enqueue_capacity_free",
    "Free remote queue slots at the last refresh (-1 = unlimited)",
)
WORKERS_RUNNING = Gauge(
    "batch_analysis_workers_running",
    "Worker loops running in this process",
)


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


def transition_backoff(failures: int) -> int:
    """Seconds to wait before retrying a marker that has failed ``failures`` times."""
    base = min(300, (2**failures) * 5)
    jitter = random.randint(0, min(10, base // 2))
    return base + jitter


class EnqueueCapacity:
    """Free slots in the remote queue, shared by the worker loops of a process.

    The remote queue's own ``max_queued`` and our ``remote_enqueue_limit``
    both cap the number of jobs we hold there; the lower one wins. With no
    known limit capacity is unlimited.
    """

    def __init__(
        self,
        client,
        limit: Optional[int] = None,
        refresh_interval_s: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._limit = limit
        self._refresh_interval_s = refresh_interval_s
        self._clock = clock
        self._free: Optional[int] = None
        self._refreshed_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def free(self) -> Optional[int]:
        return self._free

    async def refresh(self) -> Optional[int]:
        """Re-read the remote limit and our enqueued job count.

        On a failed remote call the previous value is kept.
        """
        self._refreshed_at = self._clock()

        max_queued = await self._client.fetch_max_queued()
        if not max_queued.ok:
            logger.warning("capacity_refresh_failed", error=str(max_queued.error))
            return self._free

        limits = [limit for limit in (max_queued.value, self._limit) if limit]
        if not limits:
            self._free = None
            ENQUEUE_CAPACITY_FREE.set(-1)
            return None

        enqueued = await self._client.count_enqueued_jobs()
        if not enqueued.ok:
            logger.warning("capacity_refresh_failed", error=str(enqueued.error))
            return self._free

        self._free = max(0, min(limits) - enqueued.value)
        ENQUEUE_CAPACITY_FREE.set(self._free)
        logger.debug("capacity_refreshed", free=self._free, enqueued=enqueued.value)
        return self._free

    async def available(self) -> bool:
        async with self._lock:
            stale = (
                self._refreshed_at is None
                or self._clock() - self._refreshed_at >= self._refresh_interval_s
            )
            if stale:
                await self.refresh()
        return self._free is None or self._free > 0

    def take(self) -> None:
        """Account for one submission until the next refresh."""
        if self._free is not None:
            self._free = max(0, self._free - 1)


class WorkerRunner:
    """Worker loop that claims marked items and drives their transitions."""

    def __init__(
        self,
        pool,
        orchestrator: JobOrchestrator,
        client,
        capacity: Optional[EnqueueCapacity] = None,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
        reconcile: bool = True,
        repo: Optional[JobItemRepository] = None,
    ):
        self._pool = pool
        self._orchestrator = orchestrator
        self._client = client
        self._settings = settings or get_settings()
        self._capacity = capacity or EnqueueCapacity(
            client,
            limit=self._settings.remote_enqueue_limit,
            refresh_interval_s=self._settings.capacity_refresh_interval_s,
        )
        self._worker_id = worker_id or generate_worker_id()
        self._reconcile = reconcile
        self._repo = repo or JobItemRepository(pool)
        self._running = False

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker loop."""
        settings = self._settings
        self._running = True
        WORKERS_RUNNING.inc()

        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            version=__version__,
            reconcile=self._reconcile,
        )

        poll_interval = settings.worker_poll_interval_s
        reconcile_interval = settings.reconcile_interval_s
        last_reconcile = asyncio.get_running_loop().time()

        while self._running:
            try:
                if not await self.run_once():
                    await asyncio.sleep(poll_interval)

                now = asyncio.get_running_loop().time()
                if self._reconcile and now - last_reconcile >= reconcile_interval:
                    await self.reconcile()
                    last_reconcile = now

            except asyncio.CancelledError:
                logger.info("worker_cancelled", worker_id=self._worker_id)
                break
            except Exception as e:
                logger.error(
                    "worker_loop_error", error=str(e), traceback=traceback.format_exc()
                )
                await asyncio.sleep(poll_interval)

        self._running = False
        WORKERS_RUNNING.dec()
        logger.info("worker_stopped", worker_id=self._worker_id)

    async def stop(self):
        """Stop the worker loop gracefully."""
        self._running = False

    async def run_once(self) -> bool:
        """Claim and process one marked item. Returns False if none was claimable."""
        transitions = None
        if not await self._capacity.available():
            transitions = list(OTHER_TRANSITIONS)

        item = await self._repo.claim(
            self._worker_id, self._settings.worker_claim_lease_s, transitions
        )
        if item is None:
            return False

        await self._process_item(item)
        return True

    async def _process_item(self, item: JobItem) -> None:
        loaded = item.transition
        label = loaded.value if loaded else "none"
        log = logger.bind(
            item_id=item.id,
            transition=loaded.value if loaded else None,
            worker_id=self._worker_id,
        )
        log.info("transition_processing", status=item.status.value)

        try:
            context = await self._repo.load_context(item)
            event = await self._orchestrator.process(context)
            await self._repo.save(item, loaded, self._worker_id)
        except (ValidationError, IllegalTransitionError) as e:
            # Retrying cannot fix these
            log.error("transition_abandoned", error=str(e), error_type=type(e).__name__)
            TRANSITIONS_TOTAL.labels(transition=label, outcome="abandoned").inc()
            if loaded is not None:
                await self._repo.abandon_transition(item.id, self._worker_id, loaded)
            else:
                await self._repo.release(item.id, self._worker_id)
            return
        except Exception as e:
            delay = transition_backoff(item.transition_failures)
            log.warning(
                "transition_failed",
                error=str(e),
                error_type=type(e).__name__,
                failures=item.transition_failures + 1,
                retry_in_s=delay,
            )
            TRANSITIONS_TOTAL.labels(transition=label, outcome="failed").inc()
            await self._repo.release_with_backoff(item.id, self._worker_id, delay)
            return

        if event in (ItemEvent.QUEUE, ItemEvent.RETRY):
            self._capacity.take()
        elif event == ItemEvent.FINISH:
            await self._orchestrator.notify_finished(item)
        TRANSITIONS_TOTAL.labels(
            transition=label, outcome="processed" if event else "cleared"
        ).inc()
        log.info(
            "transition_processed",
            fired=event.value if event else None,
            status=item.status.value,
        )

    async def reconcile(self) -> int:
        """Poll the remote queue for items whose status callbacks never arrived.

        Finished or vanished jobs are finished locally with the status that
        was just fetched; queued items found running are moved to working.
        Returns the number of items finished.
        """
        settings = self._settings
        items = await self._repo.claim_stale(
            self._worker_id,
            settings.stale_after_minutes,
            settings.reconcile_batch_size,
            settings.worker_claim_lease_s,
        )
        if not items:
            return 0

        finished = 0
        for item in items:
            log = logger.bind(item_id=item.id, queue_id=item.queue_id)
            try:
                status = await self._remote_status(item)
                if status is None or status.is_final:
                    await self._orchestrator.finish(item, status)
                    await self._repo.save(item, None, self._worker_id)
                    await self._orchestrator.notify_finished(item)
                    finished += 1
                    outcome = "finished"
                elif status.running and item.status == ItemStatus.QUEUED:
                    self._orchestrator.work(item)
                    await self._repo.save(item, None, self._worker_id)
                    outcome = "working"
                else:
                    await self._repo.release(item.id, self._worker_id)
                    outcome = "unchanged"
            except Exception as e:
                log.warning("reconcile_item_failed", error=str(e), error_type=type(e).__name__)
                await self._repo.release(item.id, self._worker_id)
                outcome = "failed"
            ITEMS_RECONCILED_TOTAL.labels(outcome=outcome).inc()

        logger.info("reconcile_completed", checked=len(items), finished=finished)
        return finished

    async def _remote_status(self, item: JobItem) -> Optional[JobStatus]:
        """Current remote status, or None if the item has no queue id."""
        if item.queue_id is None:
            return None
        result = await self._client.fetch_status(item.queue_id)
        if not result.ok:
            if isinstance(result.error, UnknownJobError):
                return JobStatus.unknown(item.queue_id)
            raise result.error  # type: ignore[misc]
        return result.value


class WorkerPool:
    """A fixed number of worker loops running as tasks in this process.

    Only the first loop reconciles stale items.
    """

    def __init__(self, pool, orchestrator: JobOrchestrator, client, settings: Settings):
        self._settings = settings
        capacity = EnqueueCapacity(
            client,
            limit=settings.remote_enqueue_limit,
            refresh_interval_s=settings.capacity_refresh_interval_s,
        )
        base_id = generate_worker_id()
        self.runners = [
            WorkerRunner(
                pool,
                orchestrator,
                client,
                capacity=capacity,
                settings=settings,
                worker_id=f"{base_id}:{index}",
                reconcile=index == 0,
            )
            for index in range(settings.worker_concurrency)
        ]
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        if self._tasks:
            logger.warning("worker_pool_already_running")
            return
        self._tasks = [asyncio.create_task(runner.start()) for runner in self.runners]
        logger.info("worker_pool_started", concurrency=len(self.runners))

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop all loops, cancelling any that do not finish within ``timeout``."""
        if not self._tasks:
            return

        for runner in self.runners:
            await runner.stop()

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("worker_pool_stop_timeout", cancelled=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks = []
        logger.info("worker_pool_stopped")
