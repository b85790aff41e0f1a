"""
Activity: Realtime Backend — provisions a Convex project per app, publishes
its auth secrets, and pushes the app's server functions.

Quota exhaustion on project creation is reported as BackendQuotaExceeded so
the pipeline can downgrade to a static app; every other failure is fatal.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path
from typing import Protocol

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

import config
from models.errors import BackendFatal, BackendQuotaExceeded
from models.schemas import BackendProject
from utils.http import describe_error, make_client
from utils.process import run_process

log = logging.getLogger(__name__)

QUOTA_MARKERS = ("quota", "limit reached", "too many projects")


class BackendProvider(Protocol):
    async def create_project(self, name: str) -> BackendProject: ...
    async def set_secrets(self, endpoint: str, credential: str, values: dict[str, str]) -> None: ...
    async def deploy_functions(self, working_area: str, credential: str) -> None: ...


def _is_quota_error(resp: httpx.Response) -> bool:
    if resp.status_code == 402:
        return True
    if resp.status_code not in (400, 403, 429):
        return False
    try:
        body = resp.json()
    except ValueError:
        return False
    if not isinstance(body, dict):
        return False
    text = f"{body.get('code', '')} {body.get('message', '')}".lower()
    return any(marker in text for marker in QUOTA_MARKERS)


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_auth_keys(site_url: str) -> dict[str, str]:
    """Fresh RS256 signing keypair as backend secrets.

    JWT_PRIVATE_KEY is a PKCS8 PEM with newlines flattened to spaces (env vars
    are single-line); JWKS is the matching public verification set.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    numbers = private_key.public_key().public_numbers()
    jwks = {"keys": [{
        "use": "sig",
        "kty": "RSA",
        "alg": "RS256",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }]}
    return {
        "JWT_PRIVATE_KEY": pem.strip().replace("\n", " "),
        "JWKS": json.dumps(jwks),
        "SITE_URL": site_url,
    }


class ConvexBackend:
    """Convex management API + CLI deploys."""

    def __init__(self, team_id: str | None = None, access_token: str | None = None,
                 client: httpx.AsyncClient | None = None):
        self.team_id = team_id or config.CONVEX_TEAM_ID
        self._client = client or make_client(
            config.CONVEX_API_URL,
            headers={"Authorization": f"Bearer {access_token or config.CONVEX_ACCESS_TOKEN}"},
        )

    async def create_project(self, name: str) -> BackendProject:
        log.info("Creating Convex project: %s", name)
        try:
            resp = await self._client.post(
                f"/teams/{self.team_id}/create_project",
                json={"projectName": name, "deploymentType": "prod"},
            )
            if _is_quota_error(resp):
                raise BackendQuotaExceeded(f"Convex project quota reached ({resp.status_code})")
            resp.raise_for_status()
            data = resp.json()
            deployment_name = data["deploymentName"]

            key_resp = await self._client.post(
                f"/deployments/{deployment_name}/create_deploy_key",
                json={"name": f"appforge-{name}"},
            )
            key_resp.raise_for_status()
            deploy_key = key_resp.json()["deployKey"]
        except httpx.HTTPError as e:
            raise BackendFatal(f"Convex provisioning failed: {describe_error(e)}") from None
        except (KeyError, ValueError) as e:
            raise BackendFatal(f"Convex provisioning returned an unexpected payload: {type(e).__name__}") from None

        log.info("Convex project ready: %s (%s)", deployment_name, data["deploymentUrl"])
        return BackendProject(name=name, endpoint=data["deploymentUrl"], deploy_credential=deploy_key)

    async def set_secrets(self, endpoint: str, credential: str, values: dict[str, str]) -> None:
        log.info("Setting %d backend secrets on %s", len(values), endpoint)
        try:
            async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SEC) as client:
                resp = await client.post(
                    f"{endpoint.rstrip('/')}/api/v1/update_environment_variables",
                    headers={"Authorization": f"Convex {credential}"},
                    json={"changes": [{"name": k, "value": v} for k, v in values.items()]},
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise BackendFatal(f"Setting backend secrets failed: {describe_error(e)}") from None

    async def deploy_functions(self, working_area: str, credential: str) -> None:
        log.info("Deploying Convex functions from %s", working_area)
        returncode, tail = await _convex_deploy(Path(working_area), credential)
        if returncode != 0:
            log.error("Convex deploy failed (exit %d): %s", returncode, tail)
            raise BackendFatal(f"Convex function deploy exited with {returncode}")
        log.info("Convex functions deployed")


async def _convex_deploy(cwd: Path, credential: str) -> tuple[int, str]:
    env = {**os.environ, "CONVEX_DEPLOY_KEY": credential}
    returncode, output = await run_process(["npx", "convex", "deploy", "--yes"], cwd,
                                           timeout=config.BACKEND_DEPLOY_TIMEOUT_SEC, env=env)
    # CLI output can echo the deploy key; keep only the last lines and mask it
    tail = "\n".join(output.splitlines()[-10:])
    return returncode, tail.replace(credential, "[REDACTED]")
