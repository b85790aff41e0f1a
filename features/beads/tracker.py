"""
Bead Tracker — the stage audit trail of one build job.

Stages announce themselves with begin(), then end in exactly one of
complete / fail / degrade. Stages whose provider is not configured are
recorded as skipped so the trail always shows the full stage list.

With DATABASE_URL set, each transition is also queued for an upsert on the
bead-db writer thread; a failed write is logged and the job carries on.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone

import psycopg2

from features.beads import db as bead_db
from features.beads.models import Bead, BeadStatus, StageCategory

log = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class BeadTracker:

    def __init__(self, job_id: str, persist: bool | None = None):
        self.job_id = job_id
        self.beads: list[Bead] = []
        self._clock: dict[str, float] = {}
        self._persist_enabled = bead_db.is_enabled() if persist is None else persist

    def _save(self, bead: Bead) -> None:
        if self._persist_enabled:
            bead_db.submit(self._write, bead.to_dict())

    def _write(self, data: dict) -> None:
        try:
            bead_db.upsert_bead(self.job_id, data)
        except psycopg2.Error as e:
            log.warning("[BEAD] %s: could not persist %s (%s)", self.job_id, data["id"], type(e).__name__)

    def _close(self, bead: Bead, status: BeadStatus, error: str | None = None) -> None:
        bead.status = status
        bead.error = error
        bead.completed_at = _utcnow()
        started = self._clock.pop(bead.id, None)
        if started is not None:
            bead.duration_sec = round(time.monotonic() - started, 2)
        self._save(bead)

    def create(self, name: str, category: StageCategory | str, target: str = "") -> Bead:
        bead = Bead(id=f"bead-{uuid.uuid4().hex[:8]}", name=name,
                    category=StageCategory(category), target=target)
        self.beads.append(bead)
        log.info("[BEAD] %s: + %s [%s]", self.job_id, name, bead.category.value)
        self._save(bead)
        return bead

    def start(self, bead: Bead) -> None:
        bead.status = BeadStatus.RUNNING
        bead.started_at = _utcnow()
        self._clock[bead.id] = time.monotonic()
        log.info("[BEAD] %s: > %s %s", self.job_id, bead.name, bead.target)
        self._save(bead)

    def begin(self, name: str, category: StageCategory | str, target: str = "") -> Bead:
        bead = self.create(name, category, target)
        self.start(bead)
        return bead

    def complete(self, bead: Bead, outcome: str = "", metadata: dict | None = None) -> None:
        bead.outcome = outcome
        bead.metadata.update(metadata or {})
        self._close(bead, BeadStatus.COMPLETED)
        log.info("[BEAD] %s: ok %s in %.2fs: %s", self.job_id, bead.name, bead.duration_sec or 0, outcome)

    def fail(self, bead: Bead, error: str) -> None:
        self._close(bead, BeadStatus.FAILED, error)
        log.error("[BEAD] %s: FAILED %s: %s", self.job_id, bead.name, error)

    def degrade(self, bead: Bead, error: str) -> None:
        """A best-effort stage failed; the job goes on without its output."""
        self._close(bead, BeadStatus.DEGRADED, error)
        log.warning("[BEAD] %s: degraded %s: %s", self.job_id, bead.name, error)

    def skip(self, bead: Bead, reason: str = "") -> None:
        bead.outcome = reason
        self._close(bead, BeadStatus.SKIPPED)
        log.info("[BEAD] %s: skipped %s: %s", self.job_id, bead.name, reason)

    def fail_open(self, error: str) -> None:
        """Fail whatever stage was in flight when the job aborted."""
        for bead in self.beads:
            if bead.status is BeadStatus.RUNNING:
                self.fail(bead, error)

    def to_list(self) -> list[dict]:
        return [b.to_dict() for b in self.beads]

    def summary(self) -> dict:
        statuses: dict[str, int] = {}
        for b in self.beads:
            statuses[b.status.value] = statuses.get(b.status.value, 0) + 1
        return {
            "job_id": self.job_id,
            "total_beads": len(self.beads),
            "statuses": statuses,
            "total_duration_sec": round(sum(b.duration_sec or 0 for b in self.beads), 2),
        }
