"""
Activity: Artifact Merge — combines the variant skeleton with the agent's
creative files into one deployable file set.

Precedence rule: creative wins on collision, except for protected skeleton
paths where the skeleton wins and the creative file is dropped.
"""

from __future__ import annotations

import html
import json
import logging
import re
from typing import Iterable, Mapping

from activities.skeleton import (
    MANIFEST_PATH,
    SLOT_BACKEND_URL,
    SLOT_FONT_LINKS,
    SLOT_TITLE,
)
from models.schemas import AppMetadata, Artifact, ArtifactSet, artifact_set

log = logging.getLogger(__name__)

_SLOT_RE = re.compile(r"\{\{([A-Z_]+)\}\}")


def fill_slots(content: str, slots: Mapping[str, str]) -> str:
    """Substitute {{NAME}} placeholders in a single pass.

    Substituted values are never rescanned, and unknown slots are left as-is.
    """
    return _SLOT_RE.sub(lambda m: slots.get(m.group(1), m.group(0)), content)


def inject_dependencies(manifest: str, extra: Mapping[str, str]) -> str:
    """Add extra dependencies to a package.json; existing pins are kept."""
    if not extra:
        return manifest
    data = json.loads(manifest)
    deps = dict(data.get("dependencies", {}))
    for name, version in extra.items():
        deps.setdefault(name, version)
    data["dependencies"] = dict(sorted(deps.items()))
    return json.dumps(data, indent=2) + "\n"


def font_links(font_urls: Iterable[str]) -> str:
    urls = [u for u in font_urls if u.startswith("https://")]
    if not urls:
        return ""
    tags = ['<link rel="preconnect" href="https://fonts.gstatic.com" crossorigin />']
    tags += [f'<link rel="stylesheet" href="{html.escape(u, quote=True)}" />' for u in urls]
    return "\n    ".join(tags)


def slots_for(metadata: AppMetadata | None, backend_url: str | None = None) -> dict[str, str]:
    """Derive slot values from the agent's metadata and the backend endpoint."""
    slots = {SLOT_TITLE: "App", SLOT_FONT_LINKS: "", SLOT_BACKEND_URL: backend_url or ""}
    if metadata:
        slots[SLOT_TITLE] = html.escape(metadata.title or metadata.name)
        slots[SLOT_FONT_LINKS] = font_links(metadata.fonts)
    return slots


def merge(
    skeleton: Iterable[Artifact],
    protected: frozenset[str] | set[str],
    creative: Mapping[str, Artifact],
    slots: Mapping[str, str] | None = None,
    extra_dependencies: Mapping[str, str] | None = None,
) -> tuple[ArtifactSet, list[str]]:
    """Merge skeleton and creative artifacts.

    Returns the merged ArtifactSet (skeleton order first, then creative
    additions in their given order) and the list of dropped creative paths.
    """
    slots = slots or {}

    def render(artifact: Artifact) -> Artifact:
        content = fill_slots(artifact.content, slots)
        if artifact.path == MANIFEST_PATH and extra_dependencies:
            content = inject_dependencies(content, extra_dependencies)
        return Artifact(artifact.path, content)

    merged = artifact_set(render(a) for a in skeleton)

    dropped: list[str] = []
    for path, artifact in creative.items():
        if path in protected:
            log.warning("Dropping creative file on protected path: %s", path)
            dropped.append(path)
            continue
        merged[path] = Artifact(path, artifact.content)

    log.info("Merged %d files (%d creative, %d dropped)",
             len(merged), len(creative) - len(dropped), len(dropped))
    return merged, dropped
