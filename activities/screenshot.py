"""
Activity: Screenshot — captures the live app through an external capture service.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

import config
from utils.http import make_client

log = logging.getLogger(__name__)

VIEWPORT = {"width": 1200, "height": 630}
SETTLE_MS = 5_000


class VisualVerificationProvider(Protocol):
    async def capture(self, url: str) -> bytes: ...


class ScreenshotService:
    """POSTs the URL to the capture service and returns PNG bytes."""

    def __init__(self, api_url: str | None = None, api_key: str | None = None,
                 client: httpx.AsyncClient | None = None):
        headers = {}
        if api_key or config.SCREENSHOT_API_KEY:
            headers["Authorization"] = f"Bearer {api_key or config.SCREENSHOT_API_KEY}"
        # 3D apps can take a while to settle; allow well past the settle time
        self._client = client or make_client(api_url or config.SCREENSHOT_API_URL,
                                             headers=headers, timeout=60.0)

    async def capture(self, url: str) -> bytes:
        log.info("Taking screenshot of %s", url)
        resp = await self._client.post("/capture", json={
            "url": url,
            "viewport": VIEWPORT,
            "waitUntil": "domcontentloaded",
            "settleMs": SETTLE_MS,
            "format": "png",
        })
        resp.raise_for_status()
        image = resp.content
        if not image:
            raise ValueError("Capture service returned an empty image")
        log.info("Screenshot taken (%d bytes)", len(image))
        return image
