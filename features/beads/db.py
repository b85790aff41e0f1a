"""
Postgres backing store for build jobs and their stage beads.

Tables:
  build_jobs  — one row per accepted build request
  beads       — one row per pipeline stage, FK to build_jobs

Optional: only used when DATABASE_URL is set. Every bead state change is
queued for persistence at once (see submit) so the audit trail survives crashes.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable

import psycopg2
import psycopg2.extras

import config

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []


def is_enabled() -> bool:
    return bool(config.DATABASE_URL)


def _get_conn():
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor():
    """Yield a dict cursor."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Background writes ─────────────────────────────────────────────────

# One writer thread: writes land in submission order (job row before its
# beads) and never block the event loop.
_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bead-db")


def submit(fn: Callable[..., None], *args) -> Future:
    """Queue a write on the writer thread; fn handles its own errors."""
    return _writer.submit(fn, *args)


def flush(timeout: float | None = None) -> None:
    """Block until every write queued so far has run."""
    _writer.submit(lambda: None).result(timeout=timeout)


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS build_jobs (
    job_id          TEXT PRIMARY KEY,
    dedup_key       TEXT NOT NULL,
    channel         TEXT NOT NULL,
    idea            TEXT NOT NULL DEFAULT '',
    username        TEXT,
    variant         TEXT,
    status          TEXT NOT NULL DEFAULT 'queued',
    stage           TEXT,
    result          TEXT,
    error_kind      TEXT,
    app_url         TEXT,
    source_url      TEXT,
    gallery_url     TEXT,
    started_at      TIMESTAMPTZ,
    completed_at    TIMESTAMPTZ,
    duration_sec    DOUBLE PRECISION,
    created_at      TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS beads (
    id              TEXT PRIMARY KEY,
    job_id          TEXT NOT NULL REFERENCES build_jobs(job_id) ON DELETE CASCADE,
    name            TEXT NOT NULL,
    category        TEXT NOT NULL,
    status          TEXT NOT NULL,
    target          TEXT NOT NULL DEFAULT '',
    outcome         TEXT NOT NULL DEFAULT '',
    error           TEXT,
    started_at      TIMESTAMPTZ,
    completed_at    TIMESTAMPTZ,
    duration_sec    DOUBLE PRECISION,
    metadata        JSONB NOT NULL DEFAULT '{}'::jsonb,
    seq             BIGSERIAL
);

CREATE INDEX IF NOT EXISTS idx_beads_job_id ON beads(job_id);
CREATE INDEX IF NOT EXISTS idx_build_jobs_status ON build_jobs(status);
CREATE INDEX IF NOT EXISTS idx_build_jobs_dedup_key ON build_jobs(dedup_key);
"""


def init_db():
    """Create tables if they don't exist."""
    try:
        with get_cursor() as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Database schema initialized")
    except psycopg2.Error as e:
        log.error("Failed to initialize database: %s", type(e).__name__)
        raise


# ── Build job CRUD ────────────────────────────────────────────────────

_JOB_COLUMNS = (
    "job_id", "dedup_key", "channel", "idea", "username", "variant", "status",
    "stage", "result", "error_kind", "app_url", "source_url", "gallery_url",
    "started_at", "completed_at", "duration_sec",
)

_JOB_REQUIRED = ("dedup_key", "channel", "idea")  # NOT NULL: '' on first insert, never overwritten by ''


def upsert_build_job(job: dict) -> None:
    """Insert or update a build job record; missing fields keep their stored value."""
    row = {col: job.get(col) for col in _JOB_COLUMNS}
    row.update({col: row[col] or "" for col in _JOB_REQUIRED})
    updates = ",\n                ".join(
        f"{col} = COALESCE(NULLIF(EXCLUDED.{col}, ''), build_jobs.{col})" if col in _JOB_REQUIRED
        else f"{col} = COALESCE(EXCLUDED.{col}, build_jobs.{col})"
        for col in _JOB_COLUMNS if col != "job_id"
    )
    with get_cursor() as cur:
        cur.execute(f"""
            INSERT INTO build_jobs ({", ".join(_JOB_COLUMNS)})
            VALUES ({", ".join(f"%({c})s" for c in _JOB_COLUMNS)})
            ON CONFLICT (job_id) DO UPDATE SET
                {updates}
        """, row)


def get_build_job(job_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute("SELECT * FROM build_jobs WHERE job_id = %s", (job_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_build_jobs(limit: int = 50, status: str | None = None) -> list[dict]:
    """List build jobs, newest first."""
    with get_cursor() as cur:
        if status:
            cur.execute(
                "SELECT * FROM build_jobs WHERE status = %s ORDER BY created_at DESC LIMIT %s",
                (status, limit),
            )
        else:
            cur.execute(
                "SELECT * FROM build_jobs ORDER BY created_at DESC LIMIT %s",
                (limit,),
            )
        return [dict(row) for row in cur.fetchall()]


# ── Bead CRUD ─────────────────────────────────────────────────────────

_BEAD_COLUMNS = (
    "id", "job_id", "name", "category", "status", "target", "outcome", "error",
    "started_at", "completed_at", "duration_sec", "metadata",
)
_BEAD_MUTABLE = ("status", "outcome", "error", "started_at", "completed_at", "duration_sec", "metadata")


def upsert_bead(job_id: str, bead: dict) -> None:
    """Write the current state of a bead; called on every transition."""
    row = {col: bead.get(col) for col in _BEAD_COLUMNS}
    row.update(job_id=job_id, target=row["target"] or "", outcome=row["outcome"] or "",
               metadata=json.dumps(row["metadata"] or {}))
    updates = ", ".join(f"{col} = EXCLUDED.{col}" for col in _BEAD_MUTABLE)
    with get_cursor() as cur:
        cur.execute(f"""
            INSERT INTO beads ({", ".join(_BEAD_COLUMNS)})
            VALUES ({", ".join(f"%({c})s" for c in _BEAD_COLUMNS)})
            ON CONFLICT (id) DO UPDATE SET {updates}
        """, row)


def get_beads_for_job(job_id: str) -> list[dict]:
    """Beads of a job in the order the stages were created."""
    with get_cursor() as cur:
        cur.execute("SELECT * FROM beads WHERE job_id = %s ORDER BY seq", (job_id,))
        return [dict(row) for row in cur.fetchall()]
