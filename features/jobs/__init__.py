"""
Jobs feature — at-most-once acceptance and per-job progress for build requests.

Public API:
    from features.jobs import DedupRegistry, ProgressRelay, JobStore
"""

from features.jobs.progress import ProgressRelay
from features.jobs.registry import DedupRegistry
from features.jobs.store import JobRecord, JobStatus, JobStore

__all__ = ["DedupRegistry", "JobRecord", "JobStatus", "JobStore", "ProgressRelay"]
