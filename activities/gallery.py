"""
Activity: Gallery — lists a deployed app on the public gallery site.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

import config
from models.schemas import GalleryEntry
from utils.http import make_client

log = logging.getLogger(__name__)


class GalleryProvider(Protocol):
    async def publish(self, entry: GalleryEntry) -> str | None: ...


class GallerySite:
    def __init__(self, api_url: str | None = None, api_key: str | None = None,
                 client: httpx.AsyncClient | None = None):
        self._client = client or make_client(
            api_url or config.GALLERY_API_URL,
            headers={"Authorization": f"Bearer {api_key or config.GALLERY_API_KEY}"},
        )

    async def publish(self, entry: GalleryEntry) -> str | None:
        """Publish the entry; the screenshot, if any, is the request body."""
        params = {
            "appName": entry.app_name,
            "description": entry.description,
            "appUrl": entry.app_url,
            "sourceUrl": entry.source_url or "",
            "username": entry.username,
            "template": entry.variant.value,
        }
        headers = {}
        content = None
        if entry.screenshot:
            headers["Content-Type"] = "image/png"
            content = entry.screenshot
        log.info("Publishing %s to gallery", entry.app_name)
        resp = await self._client.post("/api/publish", params=params, headers=headers, content=content)
        resp.raise_for_status()
        return resp.json().get("pageUrl")
