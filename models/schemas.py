"""
Data models for the build pipeline.

Dataclasses for requests, generation attempts, artifacts and deployment
outputs. AppMetadata is a pydantic model because it is parsed straight out
of agent-produced JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel, Field


class Variant(str, Enum):
    STATIC = "static"
    STATIC_3D = "static-3d"
    REALTIME_BACKEND = "realtime-backend"

    @classmethod
    def parse(cls, value: "Variant | str") -> "Variant":
        """Strict lookup; unknown variants are a contract error."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown variant: {value!r}") from None

    @property
    def needs_backend(self) -> bool:
        return self is Variant.REALTIME_BACKEND

    def downgraded(self) -> "Variant":
        """The non-backend variant used when backend provisioning is unavailable."""
        return Variant.STATIC if self.needs_backend else self


class AttemptOutcome(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"


class FailureKind(str, Enum):
    PROVIDER_ERROR = "provider_error"
    CONTENT_REFUSED = "content_refused"
    INCOMPLETE_OUTPUT = "incomplete_output"
    TIMEOUT = "timeout"


class DeploymentState(str, Enum):
    READY = "READY"
    ERROR = "ERROR"
    CANCELED = "CANCELED"
    PENDING = "PENDING"


class ProgressStage(str, Enum):
    GENERATING = "generating"
    RETRYING_WITHOUT_BACKEND = "retrying_without_backend"
    PROVISIONING_BACKEND = "provisioning_backend"
    CONFIGURING_BACKEND = "configuring_backend"
    DEPLOYING_BACKEND = "deploying_backend"
    DEPLOYING = "deploying"
    PUBLISHING_SOURCE = "publishing_source"
    WAITING_FOR_DEPLOY = "waiting_for_deploy"
    SCREENSHOT = "screenshot"
    PUBLISHING_GALLERY = "publishing_gallery"
    REPLYING = "replying"


# ── Requests ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Image:
    data: bytes
    media_type: str = "image/jpeg"


@dataclass(frozen=True)
class ParentContext:
    text: str = ""
    images: tuple[Image, ...] = ()


@dataclass(frozen=True)
class BuildRequest:
    """A normalized unit of work derived from one inbound platform message."""
    idea: str
    channel: str
    message_id: str
    media: tuple[Image, ...] = ()
    parent_context: ParentContext | None = None
    requested_variant: Variant | None = None
    username: str = "unknown"

    @property
    def dedup_key(self) -> str:
        return f"{self.channel}:{self.message_id}"

    @property
    def variant(self) -> Variant:
        return self.requested_variant or Variant.STATIC


# ── Artifacts ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Artifact:
    path: str
    content: str


ArtifactSet = dict[str, Artifact]


def artifact_set(artifacts: Iterable[Artifact] = ()) -> ArtifactSet:
    """Build an insertion-ordered ArtifactSet, rejecting duplicate paths."""
    result: ArtifactSet = {}
    for artifact in artifacts:
        if artifact.path in result:
            raise ValueError(f"Duplicate artifact path: {artifact.path}")
        result[artifact.path] = artifact
    return result


# ── Generation ────────────────────────────────────────────────────────

class AppMetadata(BaseModel):
    """Metadata the agent reports alongside a finished build."""
    name: str = Field(min_length=1, max_length=60)
    description: str = ""
    title: str = ""
    fonts: list[str] = Field(default_factory=list)
    dependencies: dict[str, str] = Field(default_factory=dict)
    ticker: str | None = None


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class TurnResult:
    """Observable output of one agentic turn."""
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class GenerationAttempt:
    """Counters and outcome of one Generation Engine run."""
    variant: Variant
    deadline: float
    turns: int = 0
    consecutive_errors: int = 0
    consecutive_refusals: int = 0
    build_failures: int = 0
    outcome: AttemptOutcome = AttemptOutcome.RUNNING
    failure: FailureKind | None = None


@dataclass
class GenerationResult:
    metadata: AppMetadata
    artifacts: ArtifactSet
    working_area: str
    variant: Variant


# ── Deployment ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BackendProject:
    name: str
    endpoint: str
    deploy_credential: str


@dataclass(frozen=True)
class HostingDeployment:
    project_name: str
    url: str
    deployment_id: str


@dataclass
class GalleryEntry:
    app_name: str
    description: str
    app_url: str
    source_url: str | None
    username: str
    variant: Variant
    screenshot: bytes | None = None


@dataclass
class DeploymentOutcome:
    """Outputs collected across the deployment stages."""
    app_url: str
    project_name: str
    variant: Variant
    source_url: str | None = None
    screenshot: bytes | None = None
    gallery_url: str | None = None
    backend_endpoint: str | None = None
    dropped_paths: list[str] = field(default_factory=list)


ReplyFn = Callable[[str, "bytes | None"], Awaitable[None]]
ProgressSink = Callable[[str], Any]
