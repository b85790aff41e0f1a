"""
Workflow: Build Pipeline

Runs one build request end to end:
  1. Generate the app with the agentic Generation Engine
  2. Provision a backend project (backend variant only; quota → one downgrade)
  3. Configure backend auth secrets
  4. Deploy backend functions
  5. Merge skeleton + creative files (backend endpoint injected)
  6. Deploy to hosting
  7. Publish source, concurrently with waiting for the deployment
  8. Screenshot the live app (best-effort)
  9. Publish to the gallery (best-effort)
  10. Reply on the originating channel

Each step is tracked as a bead and announced as a progress stage. Fatal
errors end the job with a single apology reply; degraded steps only omit
their output from the reply.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx

import config
from activities.backend import BackendProvider, ConvexBackend, generate_auth_keys
from activities.gallery import GalleryProvider, GallerySite
from activities.generate import GenerationEngine, GenerationOptions, GenerationProvider
from activities.hosting import HostingProvider, VercelHosting, public_url, unique_name, wait_until_ready
from activities.merge import merge, slots_for
from activities.screenshot import ScreenshotService, VisualVerificationProvider
from activities.skeleton import resolve_skeleton
from activities.source_publish import GitHubSource, SourceControlProvider, publish_source
from features.beads import BeadTracker, StageCategory
from features.jobs.progress import ProgressRelay
from features.jobs.registry import DedupRegistry
from features.jobs.store import record_job
from models.errors import (
    BackendQuotaExceeded,
    BuildError,
    GalleryDegraded,
    HostingFatal,
    SourcePublishDegraded,
    UnknownFatal,
    VisualDegraded,
)
from models.schemas import (
    BuildRequest,
    DeploymentOutcome,
    GalleryEntry,
    GenerationResult,
    ProgressSink,
    ProgressStage,
    ReplyFn,
    Variant,
)
from utils.http import describe_error
from utils.llm import OpenAIAgentProvider
from utils.workspace import remove_working_area

log = logging.getLogger(__name__)

APOLOGY = "Sorry, I couldn't build that app right now. Please try again later!"
PROGRESS_DRAIN_SEC = 5.0


@dataclass
class Services:
    """External collaborators of the pipeline. Optional ones may be None (stage skipped)."""
    generation: GenerationProvider
    hosting: HostingProvider
    backend: BackendProvider | None = None
    source: SourceControlProvider | None = None
    screenshot: VisualVerificationProvider | None = None
    gallery: GalleryProvider | None = None
    generation_overrides: dict = field(default_factory=dict)
    readiness_timeout: float | None = None
    readiness_interval: float | None = None

    @classmethod
    def from_config(cls) -> "Services":
        """Build providers for every service whose credentials are configured."""
        return cls(
            generation=OpenAIAgentProvider(),
            hosting=VercelHosting(),
            backend=ConvexBackend() if config.CONVEX_ACCESS_TOKEN and config.CONVEX_TEAM_ID else None,
            source=GitHubSource() if config.GITHUB_TOKEN else None,
            screenshot=ScreenshotService() if config.SCREENSHOT_API_URL else None,
            gallery=GallerySite() if config.GALLERY_API_URL and config.GALLERY_API_KEY else None,
        )


def new_job_id() -> str:
    return f"job-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def compose_reply(outcome: DeploymentOutcome) -> str:
    lines = [f"✅ App live: {outcome.app_url}"]
    if outcome.source_url:
        lines.append(f"📝 Source: {outcome.source_url}")
    if outcome.gallery_url:
        lines.append(f"🌐 Gallery: {outcome.gallery_url}")
    return "\n".join(lines)


async def _safe_reply(reply: ReplyFn, text: str, screenshot: bytes | None) -> bool:
    try:
        await reply(text, screenshot)
        return True
    except Exception as e:
        log.error("Reply delivery failed: %s", describe_error(e))
        return False


# ── Entry point ───────────────────────────────────────────────────────

async def run_build_job(
    request: BuildRequest,
    registry: DedupRegistry,
    services: Services,
    reply: ReplyFn,
    on_progress: ProgressSink | None = None,
    job_id: str | None = None,
    tracker: BeadTracker | None = None,
) -> DeploymentOutcome | None:
    """Run one build request. Returns None for duplicates and failed jobs."""
    key = request.dedup_key
    # Claimed before the first await so a concurrent duplicate sees it
    if not registry.accept(key):
        return None

    job_id = job_id or new_job_id()
    tracker = tracker or BeadTracker(job_id)
    progress = ProgressRelay(on_progress, job_id)
    working_areas: list[str] = []
    job_start = time.monotonic()
    log.info("Job %s accepted: %s (variant=%s)", job_id, key, request.variant.value)
    record_job({
        "job_id": job_id,
        "dedup_key": key,
        "channel": request.channel,
        "idea": request.idea,
        "username": request.username,
        "variant": request.variant.value,
        "status": "processing",
        "started_at": datetime.now(timezone.utc).isoformat(),
    })

    try:
        try:
            outcome = await _run_stages(request, services, progress, tracker, working_areas)
        except Exception as e:
            if not isinstance(e, BuildError):
                log.exception("Job %s hit an unexpected error", job_id)
                e = UnknownFatal(type(e).__name__)
            tracker.fail_open(str(e))
            log.error("Job %s failed (%s): %s", job_id, e.kind, e)
            await _safe_reply(reply, APOLOGY, None)
            record_job({"job_id": job_id, "status": "error", "error_kind": e.kind, "result": APOLOGY,
                        **_finished(job_start)})
            return None

        # ━━ Step 10: Reply ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
        progress.emit(ProgressStage.REPLYING)
        text = compose_reply(outcome)
        bead = tracker.begin("Reply", StageCategory.REPLY, target=request.channel)
        if await _safe_reply(reply, text, outcome.screenshot):
            tracker.complete(bead, outcome="Delivered")
        else:
            tracker.degrade(bead, "reply delivery failed")
        record_job({
            "job_id": job_id,
            "status": "done",
            "variant": outcome.variant.value,
            "result": text,
            "app_url": outcome.app_url,
            "source_url": outcome.source_url,
            "gallery_url": outcome.gallery_url,
            **_finished(job_start),
        })
        log.info("Job %s complete in %.1fs: %s", job_id, time.monotonic() - job_start, outcome.app_url)
        return outcome
    finally:
        for area in working_areas:
            remove_working_area(area)
        registry.release(key)
        # Last progress updates (e.g. "replying") land before the job task ends
        await progress.drain(timeout=PROGRESS_DRAIN_SEC)


def _finished(job_start: float) -> dict:
    return {
        "completed_at": datetime.now(timezone.utc).isoformat(),
        "duration_sec": round(time.monotonic() - job_start, 2),
    }


# ── Stages ────────────────────────────────────────────────────────────

async def _generate(request: BuildRequest, variant: Variant, services: Services,
                    tracker: BeadTracker, working_areas: list[str]) -> GenerationResult:
    options = GenerationOptions.for_variant(variant, **services.generation_overrides)
    engine = GenerationEngine(services.generation, options)
    bead = tracker.begin("Generate App", StageCategory.GENERATION,
                         target=f"{variant.value}: {request.idea[:120]}")
    try:
        result = await engine.run(request)
    except BuildError as e:
        tracker.fail(bead, str(e))
        raise
    working_areas.append(result.working_area)
    tracker.complete(bead, outcome=f"{result.metadata.name}: {len(result.artifacts)} creative files",
                     metadata={"turns": engine.attempt.turns if engine.attempt else None,
                               "variant": result.variant.value})
    return result


async def _run_stages(request: BuildRequest, services: Services, progress: ProgressRelay,
                      tracker: BeadTracker, working_areas: list[str]) -> DeploymentOutcome:
    variant = request.variant
    if variant.needs_backend and services.backend is None:
        log.warning("No backend provider configured; building %s as %s",
                    variant.value, variant.downgraded().value)
        variant = variant.downgraded()

    # ━━ Step 1: Generate ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    progress.emit(ProgressStage.GENERATING)
    result = await _generate(request, variant, services, tracker, working_areas)
    project_name = unique_name(result.metadata.name)
    backend_endpoint: str | None = None

    if result.variant.needs_backend:
        # ━━ Step 2: Provision Backend ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
        progress.emit(ProgressStage.PROVISIONING_BACKEND)
        bead = tracker.begin("Provision Backend", StageCategory.BACKEND, target=project_name)
        try:
            project = await services.backend.create_project(project_name)
        except BackendQuotaExceeded as e:
            tracker.fail(bead, str(e))
            log.warning("Backend quota exceeded; regenerating without a backend")
            # Exactly one retry: the downgraded variant never needs a backend
            progress.emit(ProgressStage.RETRYING_WITHOUT_BACKEND)
            remove_working_area(working_areas.pop())
            result = await _generate(request, result.variant.downgraded(), services, tracker, working_areas)
            project_name = unique_name(result.metadata.name)
        except BuildError as e:
            tracker.fail(bead, str(e))
            raise
        else:
            tracker.complete(bead, outcome=project.endpoint)
            backend_endpoint = project.endpoint

            # ━━ Step 3: Configure Backend Secrets ━━━━━━━━━━━━━━━━━━━━━
            progress.emit(ProgressStage.CONFIGURING_BACKEND)
            bead = tracker.begin("Configure Backend Secrets", StageCategory.BACKEND,
                                 target="JWT_PRIVATE_KEY, JWKS, SITE_URL")
            try:
                await services.backend.set_secrets(
                    project.endpoint, project.deploy_credential,
                    generate_auth_keys(public_url(project_name)),
                )
            except BuildError as e:
                tracker.fail(bead, str(e))
                raise
            tracker.complete(bead, outcome="3 secrets set")

            # ━━ Step 4: Deploy Backend Functions ━━━━━━━━━━━━━━━━━━━━━━
            progress.emit(ProgressStage.DEPLOYING_BACKEND)
            bead = tracker.begin("Deploy Backend Functions", StageCategory.BACKEND, target=result.working_area)
            try:
                await services.backend.deploy_functions(result.working_area, project.deploy_credential)
            except BuildError as e:
                tracker.fail(bead, str(e))
                raise
            tracker.complete(bead, outcome="Functions deployed")

    # ━━ Step 5: Merge ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    skeleton, protected = resolve_skeleton(result.variant)
    merged, dropped = merge(
        skeleton, protected, result.artifacts,
        slots=slots_for(result.metadata, backend_endpoint),
        extra_dependencies=result.metadata.dependencies,
    )

    # ━━ Step 6: Hosting Deploy ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    progress.emit(ProgressStage.DEPLOYING)
    bead = tracker.begin("Deploy to Hosting", StageCategory.HOSTING, target=f"{project_name}: {len(merged)} files")
    try:
        deployment = await services.hosting.deploy(project_name, merged)
    except httpx.HTTPError as e:
        tracker.fail(bead, describe_error(e))
        raise HostingFatal(f"Hosting deploy failed: {describe_error(e)}") from None
    tracker.complete(bead, outcome=deployment.url, metadata={"dropped_paths": dropped})

    outcome = DeploymentOutcome(
        app_url=deployment.url,
        project_name=project_name,
        variant=result.variant,
        backend_endpoint=backend_endpoint,
        dropped_paths=dropped,
    )

    # ━━ Step 7: Source Publish ∥ Readiness Wait ━━━━━━━━━━━━━━━━━━━━━━━
    if services.source is not None:
        progress.emit(ProgressStage.PUBLISHING_SOURCE)
    progress.emit(ProgressStage.WAITING_FOR_DEPLOY)
    source_result, ready_result = await asyncio.gather(
        _publish_source(services, tracker, project_name, result.metadata.description, merged),
        _wait_ready(services, tracker, deployment.deployment_id),
        return_exceptions=True,
    )
    if isinstance(ready_result, BaseException):
        raise ready_result
    if isinstance(source_result, SourcePublishDegraded):
        log.warning("Source publish degraded: %s", source_result)
    elif isinstance(source_result, BaseException):
        raise source_result
    else:
        outcome.source_url = source_result

    # ━━ Step 8: Screenshot ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    if services.screenshot is not None:
        progress.emit(ProgressStage.SCREENSHOT)
        try:
            outcome.screenshot = await _capture(services, tracker, outcome.app_url)
        except VisualDegraded as e:
            log.warning("Screenshot degraded: %s", e)
    else:
        tracker.skip(tracker.create("Screenshot", StageCategory.VISUAL), "not configured")

    # ━━ Step 9: Gallery Publish ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    if services.gallery is not None:
        progress.emit(ProgressStage.PUBLISHING_GALLERY)
        entry = GalleryEntry(
            app_name=result.metadata.title or result.metadata.name,
            description=result.metadata.description,
            app_url=outcome.app_url,
            source_url=outcome.source_url,
            username=request.username,
            variant=result.variant,
            screenshot=outcome.screenshot,
        )
        try:
            outcome.gallery_url = await _publish_gallery(services, tracker, entry)
        except GalleryDegraded as e:
            log.warning("Gallery publish degraded: %s", e)
    else:
        tracker.skip(tracker.create("Publish to Gallery", StageCategory.GALLERY), "not configured")

    return outcome


async def _publish_source(services: Services, tracker: BeadTracker, name: str,
                          description: str, merged) -> str | None:
    if services.source is None:
        tracker.skip(tracker.create("Publish Source", StageCategory.SOURCE), "not configured")
        return None
    bead = tracker.begin("Publish Source", StageCategory.SOURCE, target=f"{name}: {len(merged)} files")
    try:
        url = await publish_source(services.source, name, description, merged)
    except Exception as e:
        tracker.degrade(bead, describe_error(e))
        raise SourcePublishDegraded(describe_error(e)) from None
    tracker.complete(bead, outcome=url)
    return url


async def _wait_ready(services: Services, tracker: BeadTracker, deployment_id: str) -> None:
    bead = tracker.begin("Wait for Deployment", StageCategory.HOSTING, target=deployment_id)
    try:
        await wait_until_ready(services.hosting, deployment_id,
                               timeout=services.readiness_timeout, interval=services.readiness_interval)
    except HostingFatal as e:
        tracker.fail(bead, str(e))
        raise
    tracker.complete(bead, outcome="READY")


async def _capture(services: Services, tracker: BeadTracker, url: str) -> bytes:
    bead = tracker.begin("Screenshot", StageCategory.VISUAL, target=url)
    try:
        image = await services.screenshot.capture(url)
    except Exception as e:
        tracker.degrade(bead, describe_error(e))
        raise VisualDegraded(describe_error(e)) from None
    tracker.complete(bead, outcome=f"{len(image)} bytes")
    return image


async def _publish_gallery(services: Services, tracker: BeadTracker, entry: GalleryEntry) -> str | None:
    bead = tracker.begin("Publish to Gallery", StageCategory.GALLERY, target=entry.app_name)
    try:
        page_url = await services.gallery.publish(entry)
    except Exception as e:
        tracker.degrade(bead, describe_error(e))
        raise GalleryDegraded(describe_error(e)) from None
    tracker.complete(bead, outcome=page_url or "no page url")
    return page_url
