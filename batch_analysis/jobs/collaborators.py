"""Collaborators notified when job items finish.

The progress aggregator recomputes an analysis job's counters and the
result importer ingests a successful item's output. Both run only after
the finished item has been saved. They are eventually consistent and may
be called concurrently for many items.
"""

from typing import Protocol

import structlog

from batch_analysis.jobs.models import JobItem
from batch_analysis.jobs.types import ItemStatus

logger = structlog.get_logger(__name__)


class ProgressAggregator(Protocol):
    async def item_finished(self, item: JobItem) -> None:
        ...


class ResultImporter(Protocol):
    async def import_results(self, item: JobItem) -> None:
        ...


class RepositoryProgressAggregator:
    """Recomputes an analysis job's item counts from the database."""

    def __init__(self, repo):
        self._repo = repo

    async def item_finished(self, item: JobItem) -> None:
        counts = await self._repo.count_by_status(item.analysis_job_id)
        total = sum(counts.values())
        finished = counts.get(ItemStatus.FINISHED.value, 0)
        logger.info(
            "analysis_job_progress",
            analysis_job_id=item.analysis_job_id,
            finished=finished,
            total=total,
            counts=counts,
        )
        if total and finished == total:
            logger.info("analysis_job_completed", analysis_job_id=item.analysis_job_id)


class PendingImportMarker:
    """Queues a successful item's results for the import pipeline.

    The pipeline picks up items with ``import_requested_at`` set and
    ``import_success IS NULL``, then records the outcome on the item.
    """

    def __init__(self, repo):
        self._repo = repo

    async def import_results(self, item: JobItem) -> None:
        requested_at = await self._repo.request_import(item.id)
        if requested_at is None:
            logger.warning(
                "result_import_not_requested",
                item_id=item.id,
                result=item.result.value if item.result else None,
            )
            return
        item.import_requested_at = requested_at
        logger.info("result_import_requested", item_id=item.id)
