"""
FastAPI application — web channel and job API for App Forge.

Endpoints:
  POST /build              — Screen an idea and start a build job
  GET  /jobs               — List web-channel build jobs
  GET  /jobs/{job_id}      — Job status, current stage and reply text
  GET  /jobs/{job_id}/beads — Stage audit trail of a job
  GET  /health             — Health check
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from activities.classify import LLMClassifier, detect_variant, extract_idea, screen
from features.beads import db as bead_db
from features.jobs import DedupRegistry, JobStore
from models.errors import RejectedByPolicy
from models.schemas import BuildRequest
from workflows.pipeline import APOLOGY, Services, new_job_id, run_build_job

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

WEB_CHANNEL = "web"


@asynccontextmanager
async def lifespan(app: FastAPI):
    if bead_db.is_enabled():
        try:
            bead_db.init_db()
        except psycopg2.Error as e:
            log.warning("Could not connect to Postgres: %s (jobs will be in-memory only)", type(e).__name__)
    # Tests may pre-populate state with fakes
    if not hasattr(app.state, "services"):
        app.state.services = Services.from_config()
    if not hasattr(app.state, "classifier"):
        app.state.classifier = LLMClassifier()
    app.state.registry = DedupRegistry()
    app.state.jobs = JobStore()
    app.state.tasks = set()
    yield
    for task in list(app.state.tasks):
        task.cancel()
    if bead_db.is_enabled():
        try:
            await asyncio.get_running_loop().run_in_executor(None, bead_db.flush, 10)
        except TimeoutError:
            log.warning("Shutting down with database writes still queued")


app = FastAPI(
    title="App Forge",
    description="Turns build requests into deployed web apps",
    version="1.0.0",
    lifespan=lifespan,
)


class BuildStartRequest(BaseModel):
    idea: str = Field(min_length=1, max_length=2_000)
    username: str = "anonymous"


class BuildStartResponse(BaseModel):
    job_id: str
    status: str
    variant: str


@app.exception_handler(RejectedByPolicy)
async def rejected_handler(request: Request, exc: RejectedByPolicy):
    log.info("Build request rejected: %s", exc)
    return JSONResponse(status_code=422, content={"detail": str(exc), "kind": exc.kind})


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health(request: Request):
    return {
        "status": "ok",
        "service": "app-forge",
        "active_jobs": len(request.app.state.registry),
        "database": bead_db.is_enabled(),
    }


# ── Build ─────────────────────────────────────────────────────────────

@app.post("/build", response_model=BuildStartResponse)
async def start_build(req: BuildStartRequest, request: Request):
    """Screen the idea, then run the build pipeline in the background."""
    state = request.app.state
    idea = extract_idea(req.idea) or req.idea.strip()
    if not await screen(state.classifier, idea):
        raise RejectedByPolicy("Request was not accepted for building")

    job_id = new_job_id()
    variant = detect_variant(idea)
    build = BuildRequest(
        idea=idea,
        channel=WEB_CHANNEL,
        message_id=job_id,
        requested_variant=variant,
        username=req.username,
    )
    if build.dedup_key in state.registry:
        raise HTTPException(status_code=409, detail="Job already running")

    record = state.jobs.create(job_id, idea, req.username)

    async def reply(text: str, screenshot: bytes | None) -> None:
        state.jobs.set_result(job_id, text, screenshot, failed=text == APOLOGY)

    def on_progress(stage: str) -> None:
        state.jobs.set_stage(job_id, stage)

    async def run() -> None:
        outcome = await run_build_job(build, state.registry, state.services, reply,
                                      on_progress=on_progress, job_id=job_id, tracker=record.tracker)
        if outcome is None and record.result is None:
            state.jobs.set_result(job_id, APOLOGY, failed=True)

    task = asyncio.create_task(run())
    state.tasks.add(task)
    task.add_done_callback(state.tasks.discard)
    log.info("Build job %s scheduled (%s)", job_id, variant.value)
    return BuildStartResponse(job_id=job_id, status=record.status.value, variant=variant.value)


# ── Jobs ──────────────────────────────────────────────────────────────

@app.get("/jobs")
async def list_jobs(request: Request, status: str | None = None, limit: int = 50):
    jobs = [j.to_dict() for j in request.app.state.jobs.list(status=status, limit=limit)]
    if bead_db.is_enabled():
        # Persisted jobs include other channels and earlier processes
        seen = {j["job_id"] for j in jobs}
        try:
            rows = bead_db.list_build_jobs(limit=limit, status=status)
        except psycopg2.Error as e:
            log.warning("Could not list persisted jobs: %s", type(e).__name__)
            rows = []
        jobs += [_serialize(r) for r in rows if r["job_id"] not in seen]
    return {"jobs": jobs[:limit]}


@app.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request):
    record = request.app.state.jobs.get(job_id)
    if record:
        return record.to_dict()
    if bead_db.is_enabled():
        try:
            row = bead_db.get_build_job(job_id)
        except psycopg2.Error as e:
            raise HTTPException(status_code=500, detail=f"Database error: {type(e).__name__}")
        if row:
            return _serialize(row)
    raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")


@app.get("/jobs/{job_id}/beads")
async def get_job_beads(job_id: str, request: Request):
    record = request.app.state.jobs.get(job_id)
    if record and record.tracker:
        return {"job_id": job_id, "beads": record.tracker.to_list(), "summary": record.tracker.summary()}
    if bead_db.is_enabled():
        try:
            beads = bead_db.get_beads_for_job(job_id)
        except psycopg2.Error as e:
            raise HTTPException(status_code=500, detail=f"Database error: {type(e).__name__}")
        if beads:
            return {"job_id": job_id, "beads": [_serialize(b) for b in beads]}
    raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")


def _serialize(obj):
    """Make Postgres rows JSON-serializable (datetimes → ISO strings)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=True)
