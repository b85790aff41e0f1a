"""
Error taxonomy for the build pipeline.

Fatal errors abort the job and trigger a single apology reply. Degraded
errors are caught at their own stage and only omit an optional output.
"""

from __future__ import annotations

from models.schemas import FailureKind


class BuildError(Exception):
    """Base class for every pipeline failure."""
    kind = "unknown_fatal"


class RejectedByPolicy(BuildError):
    """Classification or moderation said no. No job is created."""
    kind = "rejected_by_policy"


class GenerationFailed(BuildError):
    def __init__(self, failure: FailureKind, detail: str = ""):
        self.failure = failure
        self.kind = f"generation_failed:{failure.value}"
        super().__init__(f"Generation failed ({failure.value}){': ' + detail if detail else ''}")


class TurnTransportError(Exception):
    """A single agentic turn failed at the transport/provider level."""


class BackendQuotaExceeded(BuildError):
    kind = "backend_quota_exceeded"


class BackendFatal(BuildError):
    kind = "backend_fatal"


class HostingFatal(BuildError):
    kind = "hosting_fatal"


class UnknownFatal(BuildError):
    kind = "unknown_fatal"


class StageDegraded(BuildError):
    """Best-effort stage failed; caught at that stage, never ends the job."""


class SourcePublishDegraded(StageDegraded):
    kind = "source_publish_degraded"


class VisualDegraded(StageDegraded):
    kind = "visual_degraded"


class GalleryDegraded(StageDegraded):
    kind = "gallery_degraded"
