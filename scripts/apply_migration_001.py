#!/usr/bin/env python3
"""Apply migration 001: analysis job item tables."""
import asyncio
import asyncpg
import os

MIGRATION = """
CREATE TABLE IF NOT EXISTS audio_recordings (
    id BIGSERIAL PRIMARY KEY,
    uuid UUID NOT NULL UNIQUE DEFAULT gen_random_uuid(),
    duration_seconds DOUBLE PRECISION NOT NULL CHECK (duration_seconds >= 0),
    data_length_bytes BIGINT NOT NULL CHECK (data_length_bytes >= 0),
    recorded_date TIMESTAMPTZ NOT NULL,
    media_type TEXT NOT NULL DEFAULT 'audio/wav',
    site_name TEXT NOT NULL DEFAULT 'site',
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION
);

CREATE TABLE IF NOT EXISTS scripts (
    id BIGSERIAL PRIMARY KEY,
    executable_command TEXT NOT NULL,
    executable_settings TEXT,
    executable_settings_name TEXT,
    resources JSONB NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS analysis_jobs_scripts (
    analysis_job_id BIGINT NOT NULL,
    script_id BIGINT NOT NULL REFERENCES scripts(id) ON DELETE CASCADE,
    custom_settings TEXT,
    PRIMARY KEY (analysis_job_id, script_id)
);

CREATE TABLE IF NOT EXISTS analysis_jobs_items (
    id BIGSERIAL PRIMARY KEY,
    analysis_job_id BIGINT NOT NULL,
    audio_recording_id BIGINT NOT NULL REFERENCES audio_recordings(id) ON DELETE CASCADE,
    script_id BIGINT NOT NULL REFERENCES scripts(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'new'
        CHECK (status IN ('new', 'queued', 'working', 'finished')),
    transition TEXT DEFAULT 'queue'
        CHECK (transition IN ('queue', 'cancel', 'finish', 'retry')),
    queue_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    result TEXT CHECK (result IN ('success', 'failed', 'killed', 'cancelled')),
    error TEXT,
    used_walltime_seconds INTEGER,
    used_memory_bytes BIGINT,
    import_success BOOLEAN,
    import_requested_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    queued_at TIMESTAMPTZ,
    work_started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    claimed_by TEXT,
    claimed_at TIMESTAMPTZ,
    transition_after TIMESTAMPTZ,
    transition_failures INTEGER NOT NULL DEFAULT 0,
    last_reconciled_at TIMESTAMPTZ,
    UNIQUE (analysis_job_id, audio_recording_id, script_id),
    -- a finished item always has an outcome and is no longer tracked remotely
    CHECK (status <> 'finished' OR (result IS NOT NULL AND queue_id IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_analysis_jobs_items_job
    ON analysis_jobs_items(analysis_job_id, status);
CREATE INDEX IF NOT EXISTS idx_analysis_jobs_items_transition
    ON analysis_jobs_items(transition_after NULLS FIRST, id)
    WHERE transition IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_analysis_jobs_items_remote
    ON analysis_jobs_items(last_reconciled_at NULLS FIRST, created_at)
    WHERE status IN ('queued', 'working') AND transition IS NULL;
CREATE INDEX IF NOT EXISTS idx_analysis_jobs_items_import
    ON analysis_jobs_items(import_requested_at)
    WHERE import_requested_at IS NOT NULL AND import_success IS NULL;
"""

async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(MIGRATION)
        print("Migration 001 applied: analysis_jobs_items table created")

        # Verify
        count = await conn.fetchval(
            "SELECT COUNT(*) FROM information_schema.columns "
            "WHERE table_name = 'analysis_jobs_items'"
        )
        print(f"Table has {count} columns")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
