"""Tests for the dedup registry, progress relay, bead tracker and job store."""

import asyncio
import threading
from unittest.mock import patch

import psycopg2
import pytest

import config
from features.beads import BeadStatus, BeadTracker, StageCategory
from features.beads import db as bead_db
from features.jobs import DedupRegistry, JobStatus, JobStore, ProgressRelay
from features.jobs.store import record_job
from models.schemas import BuildRequest, ProgressStage


class TestDedupRegistry:

    def test_accept_once(self):
        registry = DedupRegistry()
        key = BuildRequest(idea="a timer", channel="telegram", message_id="42").dedup_key
        assert key == "telegram:42"
        assert registry.accept(key)
        assert not registry.accept(key)
        assert key in registry
        assert len(registry) == 1

    def test_release(self):
        registry = DedupRegistry()
        registry.accept("x:1")
        registry.release("x:1")
        registry.release("x:1")  # releasing twice is harmless
        assert registry.accept("x:1")

    def test_registries_are_independent(self):
        first, second = DedupRegistry(), DedupRegistry()
        first.accept("x:1")
        assert "x:1" not in second


class TestProgressRelay:

    def test_sync_sink(self):
        seen = []
        relay = ProgressRelay(seen.append, "job-1")
        relay.emit(ProgressStage.GENERATING)
        relay.emit("deploying")
        assert seen == ["generating", "deploying"]
        assert relay.emitted == ["generating", "deploying"]

    def test_no_sink(self):
        relay = ProgressRelay(None)
        relay.emit(ProgressStage.REPLYING)
        assert relay.emitted == ["replying"]

    def test_raising_sync_sink_is_contained(self):
        def sink(stage):
            raise RuntimeError("down")

        relay = ProgressRelay(sink)
        relay.emit(ProgressStage.GENERATING)
        assert relay.emitted == ["generating"]

    async def test_async_sink_is_fire_and_forget(self):
        gate = asyncio.Event()
        seen = []

        async def sink(stage):
            await gate.wait()
            seen.append(stage)

        relay = ProgressRelay(sink)
        relay.emit(ProgressStage.SCREENSHOT)
        assert seen == []  # emit did not wait for the sink
        gate.set()
        await relay.drain()
        assert seen == ["screenshot"]

    async def test_failing_async_sink_is_contained(self):
        async def sink(stage):
            raise RuntimeError("down")

        relay = ProgressRelay(sink)
        relay.emit(ProgressStage.DEPLOYING)
        await relay.drain()
        assert relay.emitted == ["deploying"]

    async def test_drain_gives_up_on_hung_sinks(self):
        async def sink(stage):
            await asyncio.Event().wait()

        relay = ProgressRelay(sink)
        relay.emit(ProgressStage.DEPLOYING)
        await relay.drain(timeout=0.05)
        assert len(relay._pending) == 1
        for task in list(relay._pending):
            task.cancel()


class TestBeadTracker:

    def test_lifecycle(self):
        tracker = BeadTracker("job-1", persist=False)
        bead = tracker.begin("Deploy to Hosting", "hosting", target="12 files")
        assert bead.status is BeadStatus.RUNNING
        tracker.complete(bead, outcome="https://x.vercel.app", metadata={"files": 12})
        assert bead.status is BeadStatus.COMPLETED
        assert bead.duration_sec is not None
        assert bead.metadata == {"files": 12}

        shot = tracker.begin("Screenshot", "visual")
        tracker.degrade(shot, "504 POST https://shots/capture")
        assert shot.status is BeadStatus.DEGRADED

        summary = tracker.summary()
        assert summary["total_beads"] == 2
        assert summary["statuses"] == {"completed": 1, "degraded": 1}
        assert [b["status"] for b in tracker.to_list()] == ["completed", "degraded"]

    def test_serialized_beads_use_plain_strings(self):
        tracker = BeadTracker("job-1", persist=False)
        tracker.skip(tracker.create("Publish to Gallery", StageCategory.GALLERY), "not configured")
        bead = tracker.to_list()[0]
        assert bead["category"] == "gallery"
        assert bead["status"] == "skipped"
        assert bead["outcome"] == "not configured"

    def test_unknown_category_is_rejected(self):
        tracker = BeadTracker("job-1", persist=False)
        with pytest.raises(ValueError):
            tracker.create("Mystery", "teleport")

    def test_fail_open_only_touches_running_beads(self):
        tracker = BeadTracker("job-1", persist=False)
        done = tracker.begin("Generate App", "generation")
        tracker.complete(done)
        running = tracker.begin("Wait for Deployment", "hosting")
        tracker.fail_open("hosting_fatal")
        assert done.status is BeadStatus.COMPLETED
        assert running.status is BeadStatus.FAILED
        assert running.error == "hosting_fatal"

    def test_persist_failure_only_warns(self):
        tracker = BeadTracker("job-1", persist=True)
        with patch("features.beads.db.upsert_bead", side_effect=psycopg2.OperationalError("down")) as upsert:
            bead = tracker.begin("Generate App", "generation")
            tracker.complete(bead)
            bead_db.flush(timeout=5)
        assert upsert.call_count == 3
        assert bead.status is BeadStatus.COMPLETED

    def test_persists_status_as_string(self):
        tracker = BeadTracker("job-1", persist=True)
        with patch("features.beads.db.upsert_bead") as upsert:
            tracker.create("Reply", "reply")
            bead_db.flush(timeout=5)
        job_id, bead_dict = upsert.call_args.args
        assert job_id == "job-1"
        assert bead_dict["status"] == "pending"

    def test_writes_happen_off_the_event_loop_thread(self):
        tracker = BeadTracker("job-1", persist=True)
        threads = []
        with patch("features.beads.db.upsert_bead",
                   side_effect=lambda *a: threads.append(threading.current_thread().name)):
            tracker.begin("Generate App", "generation")
            bead_db.flush(timeout=5)
        assert len(threads) == 2
        assert all(name.startswith("bead-db") for name in threads)
        assert threading.current_thread().name not in threads

    def test_persistence_follows_database_url(self):
        assert BeadTracker("job-1")._persist_enabled is False


class TestJobStore:

    def test_status_transitions(self):
        store = JobStore()
        record = store.create("job-1", "a timer", "ada")
        assert record.status is JobStatus.QUEUED
        assert record.tracker.job_id == "job-1"

        store.set_stage("job-1", "generating")
        assert record.status is JobStatus.PROCESSING
        assert record.stage == "generating"

        store.set_result("job-1", "✅ App live: https://x.vercel.app", b"png")
        assert record.status is JobStatus.DONE
        assert record.to_dict()["has_screenshot"] is True

    def test_failed_result(self):
        store = JobStore()
        store.create("job-1", "a timer", "ada")
        store.set_result("job-1", "Sorry", failed=True)
        assert store.get("job-1").status is JobStatus.ERROR

    def test_unknown_job_updates_are_ignored(self):
        store = JobStore()
        store.set_stage("nope", "generating")
        store.set_result("nope", "x")
        assert store.get("nope") is None

    def test_list_filters_by_status(self):
        store = JobStore()
        store.create("job-1", "a", "ada")
        store.create("job-2", "b", "bob")
        store.set_result("job-2", "done")
        assert [j.job_id for j in store.list(status="done")] == ["job-2"]
        assert len(store.list()) == 2

    def test_finished_jobs_are_evicted_oldest_first(self):
        store = JobStore(max_finished=2)
        for i in range(4):
            store.create(f"job-{i}", "a timer", "ada")
        for i in range(4):
            store.set_result(f"job-{i}", "done")
        assert store.get("job-0") is None
        assert store.get("job-1") is None
        assert {j.job_id for j in store.list()} == {"job-2", "job-3"}

    def test_running_jobs_are_never_evicted(self):
        store = JobStore(max_finished=0)
        store.create("job-running", "a timer", "ada")
        store.create("job-done", "a clock", "bob")
        store.set_stage("job-running", "generating")
        store.set_result("job-done", "done")
        assert store.get("job-running") is not None
        assert store.get("job-done") is None


class TestRecordJob:

    def test_no_database_means_no_write(self):
        with patch("features.beads.db.upsert_build_job") as upsert:
            record_job({"job_id": "job-1", "status": "done"})
            bead_db.flush(timeout=5)
        upsert.assert_not_called()

    def test_write_is_queued_and_failures_only_warn(self, monkeypatch):
        monkeypatch.setattr(config, "DATABASE_URL", "postgresql://forge@localhost/forge")
        with patch("features.beads.db.upsert_build_job",
                   side_effect=psycopg2.OperationalError("down")) as upsert:
            record_job({"job_id": "job-1", "status": "done"})
            bead_db.flush(timeout=5)
        upsert.assert_called_once_with({"job_id": "job-1", "status": "done"})
