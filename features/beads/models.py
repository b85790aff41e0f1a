"""
Bead records: one per deployment stage of a build job.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum


class BeadStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEGRADED = "degraded"  # best-effort stage failed, job carried on


class StageCategory(str, Enum):
    """Which service a stage talks to."""
    GENERATION = "generation"
    BACKEND = "backend"
    HOSTING = "hosting"
    SOURCE = "source"
    VISUAL = "visual"
    GALLERY = "gallery"
    REPLY = "reply"


@dataclass
class Bead:
    id: str
    name: str
    category: StageCategory
    status: BeadStatus = BeadStatus.PENDING
    target: str = ""   # what the stage acted on: project name, URL, deployment id
    outcome: str = ""
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    duration_sec: float | None = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {**asdict(self), "status": self.status.value, "category": self.category.value}
