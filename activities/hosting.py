"""
Activity: Hosting — deploys the merged file set to Vercel and waits for the
remote build to become ready.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from typing import Protocol

import httpx

import config
from models.errors import HostingFatal
from models.schemas import ArtifactSet, DeploymentState, HostingDeployment
from utils.http import describe_error, make_client

log = logging.getLogger(__name__)


class HostingProvider(Protocol):
    async def deploy(self, project_name: str, artifacts: ArtifactSet) -> HostingDeployment: ...
    async def poll_status(self, deployment_id: str) -> DeploymentState: ...


def unique_name(base: str, max_len: int = 52) -> str:
    """Slugify a name and append a random suffix so concurrent jobs never collide."""
    slug = re.sub(r"[^a-z0-9]+", "-", base.lower()).strip("-")[:max_len].strip("-") or "app"
    return f"{slug}-{secrets.token_hex(3)}"


def public_url(project_name: str) -> str:
    """The stable production alias of a project. Known before the deploy runs."""
    return f"https://{project_name}.vercel.app"


class VercelHosting:
    """Vercel v13 deployments API."""

    def __init__(self, token: str | None = None, client: httpx.AsyncClient | None = None):
        self._client = client or make_client(
            config.VERCEL_API_URL,
            headers={"Authorization": f"Bearer {token or config.VERCEL_API_TOKEN}"},
        )

    async def deploy(self, project_name: str, artifacts: ArtifactSet) -> HostingDeployment:
        log.info("Deploying %s to Vercel (%d files)", project_name, len(artifacts))
        resp = await self._client.post("/v13/deployments", json={
            "name": project_name,
            "files": [{"file": a.path, "data": a.content} for a in artifacts.values()],
            "projectSettings": {"framework": "vite"},
            "target": "production",
        })
        resp.raise_for_status()
        deployment_id = resp.json()["id"]
        # The project alias is public; the per-deployment URL sits behind Vercel auth
        url = public_url(project_name)
        log.info("Deployment created: %s (id: %s)", url, deployment_id)
        return HostingDeployment(project_name=project_name, url=url, deployment_id=deployment_id)

    async def poll_status(self, deployment_id: str) -> DeploymentState:
        resp = await self._client.get(f"/v13/deployments/{deployment_id}")
        resp.raise_for_status()
        state = resp.json().get("readyState", "")
        try:
            return DeploymentState(state)
        except ValueError:
            return DeploymentState.PENDING


async def wait_until_ready(
    hosting: HostingProvider,
    deployment_id: str,
    timeout: float | None = None,
    interval: float | None = None,
) -> None:
    """Poll until READY. ERROR, CANCELED, or timeout raise HostingFatal."""
    timeout = config.READINESS_TIMEOUT_SEC if timeout is None else timeout
    interval = config.READINESS_POLL_INTERVAL_SEC if interval is None else interval
    log.info("Waiting for deployment %s to be ready", deployment_id)
    start = time.monotonic()

    while time.monotonic() - start < timeout:
        try:
            state = await hosting.poll_status(deployment_id)
        except httpx.HTTPError as e:
            log.warning("Deployment status poll failed: %s", describe_error(e))
            state = DeploymentState.PENDING
        log.info("  Deployment state: %s", state.value)

        if state is DeploymentState.READY:
            log.info("Deployment %s is ready", deployment_id)
            return
        if state in (DeploymentState.ERROR, DeploymentState.CANCELED):
            raise HostingFatal(f"Deployment {deployment_id} ended in state {state.value}")
        await asyncio.sleep(interval)

    raise HostingFatal(f"Deployment {deployment_id} not ready after {timeout:.0f}s")
