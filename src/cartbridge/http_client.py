"""
Shared HTTP client configuration for upstream calls.

All upstream traffic goes through one httpx.AsyncClient created here so that
timeouts and connection pooling are configured in a single place.

Usage:
    client = create_client(settings)
    try:
        status, body = await request_json(client, "GET", url)
    finally:
        await client.aclose()
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import Settings
from .errors import NetworkFailureError

__all__ = [
    "create_client",
    "join_url",
    "request_json",
]

logger = logging.getLogger(__name__)


def create_client(settings: Settings | None = None, **kwargs) -> httpx.AsyncClient:
    """Create an AsyncClient with the configured timeout.

    Args:
        settings: Settings providing http_timeout. Defaults apply if omitted.
        **kwargs: Additional arguments passed to httpx.AsyncClient
            (tests pass ``transport=httpx.MockTransport(...)``).
    """
    timeout = settings.http_timeout if settings else 30.0
    kwargs.setdefault("timeout", httpx.Timeout(timeout, connect=min(timeout, 10.0)))
    return httpx.AsyncClient(**kwargs)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs,
) -> tuple[int, Any]:
    """Send a request and decode the JSON body.

    A body that is not JSON decodes to an empty dict; the status code is
    returned untouched so callers decide what counts as failure.

    Raises:
        NetworkFailureError: If the transport fails.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TransportError as e:
        logger.error("%s %s failed: %s", method, url, e)
        raise NetworkFailureError(url, str(e)) from e
    try:
        body = response.json()
    except ValueError:
        body = {}
    return response.status_code, body


def join_url(base: str, path: str) -> str:
    """Join a base URL and a path, tolerating a trailing slash on the base."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"
