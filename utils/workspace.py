"""
Working areas — per-attempt build directories for the generation agent.

Each attempt gets its own random-suffixed directory under WORK_ROOT, so
concurrent jobs never share build state.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterable

import config
from models.schemas import Artifact, ArtifactSet

log = logging.getLogger(__name__)

SKIP_DIRS = {
    ".git", "node_modules", "dist", "build", "_generated", ".vite", ".cache",
}

TEXT_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".json", ".css", ".html", ".md", ".svg",
    ".txt", ".mjs", ".cjs",
}


class WorkspacePathError(ValueError):
    """A tool tried to touch a path outside the working area."""


def create_working_area(prefix: str | None = None) -> Path:
    config.WORK_ROOT.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix or config.WORK_AREA_PREFIX, dir=config.WORK_ROOT))
    log.info("Created working area: %s", path)
    return path


def remove_working_area(path: Path | str | None) -> None:
    if not path:
        return
    shutil.rmtree(path, ignore_errors=True)
    log.info("Removed working area: %s", path)


def resolve_inside(root: Path, rel_path: str) -> Path:
    """Resolve a relative path, refusing anything that escapes root."""
    if not rel_path or PurePosixPath(rel_path).is_absolute():
        raise WorkspacePathError(f"Path must be relative: {rel_path!r}")
    target = (root / rel_path).resolve()
    if not target.is_relative_to(root.resolve()):
        raise WorkspacePathError(f"Path escapes working area: {rel_path!r}")
    return target


def relative_key(root: Path, target: Path) -> str:
    """Canonical posix path of target relative to root (".." already resolved)."""
    return target.relative_to(root.resolve()).as_posix()


def write_artifacts(root: Path, artifacts: Iterable[Artifact]) -> None:
    for artifact in artifacts:
        target = resolve_inside(root, artifact.path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(artifact.content)


def scan_creative_files(
    root: Path | str,
    creative_roots: Iterable[str],
    skeleton: dict[str, str],
) -> ArtifactSet:
    """Enumerate creative files under the given roots.

    Skeleton files whose content is unchanged are skipped; a skeleton file the
    agent rewrote is returned so the merge precedence rule can decide.
    """
    root = Path(root)
    found: ArtifactSet = {}
    for top in creative_roots:
        base = root / top
        if not base.is_dir():
            continue
        for path in sorted(base.rglob("*")):
            rel_parts = path.relative_to(root).parts
            if any(part in SKIP_DIRS for part in rel_parts):
                continue
            if not path.is_file() or path.suffix.lower() not in TEXT_EXTENSIONS:
                continue
            rel = "/".join(rel_parts)
            try:
                content = path.read_text()
            except (OSError, UnicodeDecodeError) as e:
                log.warning("Could not read %s: %s", rel, e)
                continue
            if skeleton.get(rel) == content:
                continue
            found[rel] = Artifact(rel, content)

    log.info("Scanned %s: %d creative files", root.name, len(found))
    return found
