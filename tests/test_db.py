"""Tests for the Postgres upserts, against a recording cursor."""

from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from features.beads import db as bead_db


@pytest.fixture
def cursor(monkeypatch):
    cur = MagicMock()

    @contextmanager
    def fake_cursor():
        yield cur

    monkeypatch.setattr(bead_db, "get_cursor", fake_cursor)
    return cur


def _normalized(sql: str) -> str:
    return " ".join(sql.split())


class TestUpsertBuildJob:

    def test_first_write_fills_required_columns(self, cursor):
        bead_db.upsert_build_job({"job_id": "job-1", "dedup_key": "web:job-1", "channel": "web",
                                  "idea": "a timer", "status": "processing"})
        _, params = cursor.execute.call_args.args
        assert params["dedup_key"] == "web:job-1"
        assert params["idea"] == "a timer"
        assert params["result"] is None

    def test_partial_update_keeps_stored_identity(self, cursor):
        bead_db.upsert_build_job({"job_id": "job-1", "status": "done", "result": "✅ App live: https://x"})
        sql, params = cursor.execute.call_args.args
        sql = _normalized(sql)
        # Empty strings stand in for the NOT NULL columns but never replace stored values
        assert params["dedup_key"] == "" and params["channel"] == "" and params["idea"] == ""
        for col in ("dedup_key", "channel", "idea"):
            assert f"{col} = COALESCE(NULLIF(EXCLUDED.{col}, ''), build_jobs.{col})" in sql
        assert "status = COALESCE(EXCLUDED.status, build_jobs.status)" in sql
        assert "job_id = " not in sql.split("DO UPDATE SET", 1)[1]


class TestUpsertBead:

    def test_bead_identity_is_written_once(self, cursor):
        bead_db.upsert_bead("job-1", {"id": "bead-1", "name": "Screenshot", "category": "visual",
                                      "status": "degraded", "target": None, "outcome": None,
                                      "error": "504 POST https://shots/capture", "metadata": {"a": 1}})
        sql, params = cursor.execute.call_args.args
        update = _normalized(sql).split("DO UPDATE SET", 1)[1]
        assert params["job_id"] == "job-1"
        assert params["target"] == "" and params["outcome"] == ""
        assert params["metadata"] == '{"a": 1}'
        assert "status = EXCLUDED.status" in update
        assert "name =" not in update and "category =" not in update
