"""
Shared httpx helpers — client construction and log-safe error descriptions.

Provider errors can carry Authorization headers and full response bodies.
Only a status code and the request target ever leave this module.
"""

from __future__ import annotations

import httpx

import config


def make_client(base_url: str, headers: dict[str, str] | None = None,
                timeout: float | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        headers=headers or {},
        timeout=timeout or config.HTTP_TIMEOUT_SEC,
    )


def _target(request: httpx.Request) -> str:
    url = request.url
    return f"{request.method} {url.scheme}://{url.host}{url.path}"


def describe_error(exc: BaseException) -> str:
    """Return a diagnostic string that is safe to log or show."""
    if isinstance(exc, httpx.HTTPStatusError):
        return f"{exc.response.status_code} {_target(exc.request)}"
    if isinstance(exc, httpx.RequestError):
        try:
            return f"{type(exc).__name__} {_target(exc.request)}"
        except RuntimeError:
            # .request is unset when the error was raised outside a send
            return type(exc).__name__
    return f"{type(exc).__name__}: {str(exc)[:200]}"
