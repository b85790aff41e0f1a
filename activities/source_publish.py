"""
Activity: Source Publish — pushes the app's files to a fresh GitHub repository.

Replaces the local-git flow with the GitHub contents API: no clone, no
working tree, one PUT per file.
"""

from __future__ import annotations

import base64
import logging
from typing import Protocol

import httpx

import config
from models.schemas import ArtifactSet
from utils.http import describe_error, make_client

log = logging.getLogger(__name__)


class SourceControlProvider(Protocol):
    async def create_repo(self, name: str, description: str) -> str: ...
    async def put_file(self, repo: str, path: str, content: str) -> None: ...


class GitHubSource:
    def __init__(self, token: str | None = None, client: httpx.AsyncClient | None = None):
        self._client = client or make_client(
            config.GITHUB_API_URL,
            headers={
                "Authorization": f"token {token or config.GITHUB_TOKEN}",
                "Accept": "application/vnd.github.v3+json",
            },
        )
        self._full_names: dict[str, str] = {}

    async def create_repo(self, name: str, description: str) -> str:
        """Create a public repository and return its html URL."""
        log.info("Creating GitHub repo: %s", name)
        resp = await self._client.post("/user/repos", json={
            "name": name,
            "description": description[:350],
            "private": False,
            "auto_init": False,
        })
        resp.raise_for_status()
        data = resp.json()
        self._full_names[data["html_url"]] = data["full_name"]
        log.info("Created repo: %s", data["html_url"])
        return data["html_url"]

    async def put_file(self, repo: str, path: str, content: str) -> None:
        full_name = self._full_names.get(repo) or repo.removeprefix("https://github.com/")
        resp = await self._client.put(f"/repos/{full_name}/contents/{path}", json={
            "message": f"Add {path}",
            "content": base64.b64encode(content.encode()).decode("ascii"),
        })
        resp.raise_for_status()


async def publish_source(source: SourceControlProvider, name: str, description: str,
                         artifacts: ArtifactSet) -> str:
    """Create the repo and upload every file; single-file failures are skipped."""
    repo_url = await source.create_repo(name, description)
    uploaded = 0
    # Sequential: the contents API rejects concurrent commits to one branch
    for artifact in artifacts.values():
        try:
            await source.put_file(repo_url, artifact.path, artifact.content)
            uploaded += 1
        except httpx.HTTPError as e:
            log.error("  Failed to upload %s: %s", artifact.path, describe_error(e))
    log.info("Uploaded %d/%d files to %s", uploaded, len(artifacts), repo_url)
    return repo_url
