"""Pytest fixtures for App Forge tests."""

import pytest

import config


@pytest.fixture(autouse=True)
def work_root(tmp_path, monkeypatch):
    """Keep working areas under tmp_path and never touch a real database."""
    root = tmp_path / "work"
    monkeypatch.setattr(config, "WORK_ROOT", root)
    monkeypatch.setattr(config, "DATABASE_URL", "")
    return root


@pytest.fixture
def leftover_areas(work_root):
    """Working areas still on disk."""
    def _list():
        if not work_root.exists():
            return []
        return [p for p in work_root.iterdir() if p.is_dir()]
    return _list
