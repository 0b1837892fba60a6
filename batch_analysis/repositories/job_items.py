"""Repository for analysis job items."""

import json
from datetime import datetime
from typing import Any, Optional, Sequence

import structlog

from batch_analysis.batch.resources import DynamicResourceList
from batch_analysis.core.resilience import with_db_retry
from batch_analysis.jobs.models import AudioRecording, ItemContext, JobItem, Script
from batch_analysis.jobs.types import ItemResult, ItemStatus, ItemTransition

logger = structlog.get_logger(__name__)

# Which items each bulk marker applies to
MARK_CONDITIONS: dict[ItemTransition, str] = {
    ItemTransition.CANCEL: "status <> 'finished'",
    ItemTransition.RETRY: "status = 'finished' AND result IN ('failed', 'killed', 'cancelled')",
    ItemTransition.QUEUE: "status = 'new'",
    ItemTransition.FINISH: "status IN ('queued', 'working')",
}


class JobItemRepository:
    """Persistence for job items, their markers and worker claims."""

    def __init__(self, pool):
        self._pool = pool

    async def create_items(
        self,
        analysis_job_id: int,
        audio_recording_ids: Sequence[int],
        script_ids: Sequence[int],
    ) -> int:
        """Create one new item per (recording, script) pair.

        Existing pairs are left untouched. Returns the number created.
        """
        query = """
            INSERT INTO analysis_jobs_items
                (analysis_job_id, audio_recording_id, script_id, status, transition)
            SELECT $1, r, s, 'new', 'queue'
            FROM unnest($2::bigint[]) AS r CROSS JOIN unnest($3::bigint[]) AS s
            ON CONFLICT (analysis_job_id, audio_recording_id, script_id) DO NOTHING
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                query, analysis_job_id, list(audio_recording_ids), list(script_ids)
            )
        logger.info("job_items_created", analysis_job_id=analysis_job_id, count=len(rows))
        return len(rows)

    async def get(self, item_id: int, analysis_job_id: Optional[int] = None) -> Optional[JobItem]:
        """Get an item by ID, optionally requiring it to belong to a job."""
        query = """
            SELECT * FROM analysis_jobs_items
            WHERE id = $1 AND ($2::bigint IS NULL OR analysis_job_id = $2)
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, item_id, analysis_job_id)
        return self._row_to_item(row) if row else None

    async def load_context(self, item: JobItem) -> ItemContext:
        """Load the recording, script and job settings for an item."""
        query = """
            SELECT
                r.id AS r_id, r.uuid, r.duration_seconds, r.data_length_bytes,
                r.recorded_date, r.media_type, r.site_name, r.latitude, r.longitude,
                s.id AS s_id, s.executable_command, s.executable_settings,
                s.executable_settings_name, s.resources,
                ajs.custom_settings
            FROM analysis_jobs_items i
            JOIN audio_recordings r ON r.id = i.audio_recording_id
            JOIN scripts s ON s.id = i.script_id
            LEFT JOIN analysis_jobs_scripts ajs
                ON ajs.analysis_job_id = i.analysis_job_id AND ajs.script_id = i.script_id
            WHERE i.id = $1
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, item.id)

        if not row:
            return ItemContext(item=item)

        resources = row["resources"]
        if isinstance(resources, str):
            resources = json.loads(resources)

        return ItemContext(
            item=item,
            recording=AudioRecording(
                id=row["r_id"],
                uuid=row["uuid"],
                duration_seconds=row["duration_seconds"],
                data_length_bytes=row["data_length_bytes"],
                recorded_date=row["recorded_date"],
                media_type=row["media_type"],
                site_name=row["site_name"],
                latitude=row["latitude"],
                longitude=row["longitude"],
            ),
            script=Script(
                id=row["s_id"],
                executable_command=row["executable_command"],
                executable_settings=row["executable_settings"],
                executable_settings_name=row["executable_settings_name"],
                resources=DynamicResourceList.from_dict(resources),
            ),
            custom_settings=row["custom_settings"],
        )

    async def save(
        self,
        item: JobItem,
        loaded_transition: Optional[ItemTransition],
        worker_id: Optional[str] = None,
    ) -> JobItem:
        """Persist a transitioned item.

        The marker is only written if it still holds ``loaded_transition``:
        a marker set by a bulk request while the item was being processed
        wins over the processed result. A claim held by ``worker_id`` is
        released.
        """
        query = """
            UPDATE analysis_jobs_items SET
                status = $2,
                transition = CASE
                    WHEN transition IS NOT DISTINCT FROM $3 THEN $4
                    ELSE transition
                END,
                queue_id = $5,
                result = $6,
                error = $7,
                attempts = $8,
                queued_at = $9,
                work_started_at = $10,
                finished_at = $11,
                used_walltime_seconds = $12,
                used_memory_bytes = $13,
                import_success = $14,
                import_requested_at = $15,
                claimed_at = CASE WHEN claimed_by = $16 THEN NULL ELSE claimed_at END,
                transition_after = CASE WHEN claimed_by = $16 THEN NULL ELSE transition_after END,
                transition_failures = CASE
                    WHEN claimed_by = $16 THEN 0
                    ELSE transition_failures
                END,
                claimed_by = CASE WHEN claimed_by = $16 THEN NULL ELSE claimed_by END
            WHERE id = $1
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                item.id,
                item.status.value,
                loaded_transition.value if loaded_transition else None,
                item.transition.value if item.transition else None,
                item.queue_id,
                item.result.value if item.result else None,
                item.error,
                item.attempts,
                item.queued_at,
                item.work_started_at,
                item.finished_at,
                item.used_walltime_seconds,
                item.used_memory_bytes,
                item.import_success,
                item.import_requested_at,
                worker_id,
            )
        return self._row_to_item(row)

    async def mark_transition(self, analysis_job_id: int, transition: ItemTransition) -> int:
        """Fast half of a bulk transition: set the marker in one statement.

        Returns the number of items marked.
        """
        query = f"""
            UPDATE analysis_jobs_items SET
                transition = $2,
                transition_after = NULL,
                transition_failures = 0
            WHERE analysis_job_id = $1
              AND {MARK_CONDITIONS[transition]}
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, analysis_job_id, transition.value)
        logger.info(
            "job_items_marked",
            analysis_job_id=analysis_job_id,
            transition=transition.value,
            count=len(rows),
        )
        return len(rows)

    async def record_work(self, item: JobItem) -> Optional[JobItem]:
        """Persist a ``work`` event without touching any other column.

        Returns None if the item left ``queued`` in the meantime.
        """
        query = """
            UPDATE analysis_jobs_items SET
                status = 'working',
                work_started_at = COALESCE(work_started_at, $2)
            WHERE id = $1 AND status = 'queued'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, item.id, item.work_started_at)
        return self._row_to_item(row) if row else None

    async def request_finish(self, item_id: int) -> bool:
        """Mark one item for finishing unless a cancel is already pending."""
        query = """
            UPDATE analysis_jobs_items SET transition = 'finish'
            WHERE id = $1
              AND status IN ('queued', 'working')
              AND transition IS DISTINCT FROM 'cancel'
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, item_id)
        return row is not None

    async def claim(
        self,
        worker_id: str,
        lease_seconds: int,
        transitions: Optional[Sequence[ItemTransition]] = None,
    ) -> Optional[JobItem]:
        """Claim the next marked item using FOR UPDATE SKIP LOCKED.

        The row lock only lasts for this statement; the claim itself is a
        lease that expires after ``lease_seconds``. Returns None if nothing
        is claimable.
        """
        wanted = [t.value for t in (transitions or list(ItemTransition))]
        query = """
            WITH cte AS (
                SELECT id FROM analysis_jobs_items
                WHERE transition = ANY($2::text[])
                  AND (transition_after IS NULL OR transition_after <= now())
                  AND (claimed_at IS NULL
                       OR claimed_at < now() - make_interval(secs => $3))
                ORDER BY transition_after NULLS FIRST, id
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE analysis_jobs_items i SET
                claimed_by = $1,
                claimed_at = now()
            FROM cte
            WHERE i.id = cte.id
            RETURNING i.*
        """
        row = await with_db_retry(
            self._pool,
            lambda conn: conn.fetchrow(query, worker_id, wanted, float(lease_seconds)),
        )

        if row:
            logger.info(
                "job_item_claimed",
                item_id=row["id"],
                transition=row["transition"],
                worker_id=worker_id,
            )
            return self._row_to_item(row)
        return None

    async def release_with_backoff(self, item_id: int, worker_id: str, delay_seconds: int) -> None:
        """Release a claim after a failed attempt; the marker stays set."""
        query = """
            UPDATE analysis_jobs_items SET
                claimed_by = NULL,
                claimed_at = NULL,
                transition_failures = transition_failures + 1,
                transition_after = now() + make_interval(secs => $3)
            WHERE id = $1 AND claimed_by = $2
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, item_id, worker_id, float(delay_seconds))

    async def abandon_transition(
        self, item_id: int, worker_id: str, transition: ItemTransition
    ) -> None:
        """Release a claim and drop a marker that can never succeed."""
        query = """
            UPDATE analysis_jobs_items SET
                claimed_by = NULL,
                claimed_at = NULL,
                transition = CASE WHEN transition = $3 THEN NULL ELSE transition END,
                transition_after = NULL,
                transition_failures = 0
            WHERE id = $1 AND claimed_by = $2
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, item_id, worker_id, transition.value)

    async def claim_stale(
        self,
        worker_id: str,
        stale_after_minutes: int,
        limit: int,
        lease_seconds: int,
    ) -> list[JobItem]:
        """Claim queued or working items that have gone quiet.

        Only items without a pending marker qualify; marked items belong
        to the transition workers. Items polled least recently come first
        and claiming stamps ``last_reconciled_at``, so successive sweeps
        rotate through a backlog larger than ``limit``.
        """
        query = """
            WITH cte AS (
                SELECT id FROM analysis_jobs_items
                WHERE status IN ('queued', 'working')
                  AND transition IS NULL
                  AND (claimed_at IS NULL
                       OR claimed_at < now() - make_interval(secs => $4))
                  AND (
                      work_started_at <= now() - make_interval(mins => $2)
                      OR queued_at <= now() - make_interval(mins => $2)
                  )
                ORDER BY last_reconciled_at NULLS FIRST, created_at
                FOR UPDATE SKIP LOCKED
                LIMIT $3
            )
            UPDATE analysis_jobs_items i SET
                claimed_by = $1,
                claimed_at = now(),
                last_reconciled_at = now()
            FROM cte
            WHERE i.id = cte.id
            RETURNING i.*
        """
        rows = await with_db_retry(
            self._pool,
            lambda conn: conn.fetch(
                query, worker_id, stale_after_minutes, limit, float(lease_seconds)
            ),
        )
        return sorted((self._row_to_item(row) for row in rows), key=lambda i: i.created_at)

    async def release(self, item_id: int, worker_id: str) -> None:
        """Release a claim without touching anything else."""
        query = """
            UPDATE analysis_jobs_items SET claimed_by = NULL, claimed_at = NULL
            WHERE id = $1 AND claimed_by = $2
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, item_id, worker_id)

    async def count_by_status(self, analysis_job_id: int) -> dict[str, int]:
        query = """
            SELECT status, COUNT(*) AS total FROM analysis_jobs_items
            WHERE analysis_job_id = $1
            GROUP BY status
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, analysis_job_id)
        return {row["status"]: row["total"] for row in rows}

    async def request_import(self, item_id: int) -> Optional[datetime]:
        """Queue a successful item's results for import.

        Repeated requests keep the first timestamp and any import outcome
        already recorded. Returns None if the item is not finished with a
        success result.
        """
        query = """
            UPDATE analysis_jobs_items SET
                import_requested_at = COALESCE(import_requested_at, now()),
                import_success = CASE WHEN import_requested_at IS NULL
                    THEN NULL ELSE import_success END
            WHERE id = $1 AND status = 'finished' AND result = 'success'
            RETURNING import_requested_at
        """
        async with self._pool.acquire() as conn:
            return await conn.fetchval(query, item_id)

    def _row_to_item(self, row: Any) -> JobItem:
        """Convert a database row to a JobItem model."""
        return JobItem(
            id=row["id"],
            analysis_job_id=row["analysis_job_id"],
            audio_recording_id=row["audio_recording_id"],
            script_id=row["script_id"],
            status=ItemStatus(row["status"]),
            transition=ItemTransition(row["transition"]) if row["transition"] else None,
            queue_id=row["queue_id"],
            attempts=row["attempts"],
            result=ItemResult(row["result"]) if row["result"] else None,
            error=row["error"],
            used_walltime_seconds=row["used_walltime_seconds"],
            used_memory_bytes=row["used_memory_bytes"],
            import_success=row["import_success"],
            import_requested_at=row["import_requested_at"],
            created_at=row["created_at"],
            queued_at=row["queued_at"],
            work_started_at=row["work_started_at"],
            finished_at=row["finished_at"],
            claimed_by=row["claimed_by"],
            claimed_at=row["claimed_at"],
            transition_after=row["transition_after"],
            transition_failures=row["transition_failures"],
        )
