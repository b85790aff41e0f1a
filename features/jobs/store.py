"""
Job store — status of build jobs started through the web channel.

The in-memory JobStore backs GET /jobs. record_job() mirrors job rows into
Postgres when DATABASE_URL is set so they outlive the process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import psycopg2

import config
from features.beads import BeadTracker
from features.beads import db as bead_db

log = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


def record_job(fields: dict) -> None:
    """Queue an upsert of a build_jobs row. No-op without a database."""
    if bead_db.is_enabled():
        bead_db.submit(_write_job, dict(fields))


def _write_job(fields: dict) -> None:
    try:
        bead_db.upsert_build_job(fields)
    except psycopg2.Error as e:
        log.warning("Failed to persist job %s: %s", fields.get("job_id"), type(e).__name__)


@dataclass
class JobRecord:
    job_id: str
    idea: str
    username: str
    status: JobStatus = JobStatus.QUEUED
    stage: str | None = None
    result: str | None = None
    has_screenshot: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    tracker: BeadTracker | None = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "idea": self.idea,
            "username": self.username,
            "status": self.status.value,
            "stage": self.stage,
            "result": self.result,
            "has_screenshot": self.has_screenshot,
            "created_at": self.created_at,
        }


class JobStore:
    """In-memory jobs; only the newest `max_finished` finished jobs are kept."""

    def __init__(self, max_finished: int | None = None):
        self._jobs: dict[str, JobRecord] = {}
        self.max_finished = config.MAX_FINISHED_JOBS if max_finished is None else max_finished

    def create(self, job_id: str, idea: str, username: str) -> JobRecord:
        record = JobRecord(job_id=job_id, idea=idea, username=username,
                           tracker=BeadTracker(job_id))
        self._jobs[job_id] = record
        return record

    def get(self, job_id: str) -> JobRecord | None:
        return self._jobs.get(job_id)

    def list(self, status: str | None = None, limit: int = 50) -> list[JobRecord]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        if status:
            jobs = [j for j in jobs if j.status.value == status]
        return jobs[:limit]

    def set_stage(self, job_id: str, stage: str) -> None:
        record = self._jobs.get(job_id)
        if record is None:
            return
        record.stage = stage
        if record.status is JobStatus.QUEUED:
            record.status = JobStatus.PROCESSING

    def set_result(self, job_id: str, text: str, screenshot: bytes | None = None,
                   failed: bool = False) -> None:
        record = self._jobs.get(job_id)
        if record is None:
            return
        record.result = text
        record.has_screenshot = screenshot is not None
        record.status = JobStatus.ERROR if failed else JobStatus.DONE
        self._evict()

    def _evict(self) -> None:
        # dict order is creation order, so the oldest finished jobs go first
        finished = [j.job_id for j in self._jobs.values()
                    if j.status in (JobStatus.DONE, JobStatus.ERROR)]
        for job_id in finished[:max(0, len(finished) - self.max_finished)]:
            del self._jobs[job_id]
            log.debug("Evicted finished job %s from memory", job_id)
