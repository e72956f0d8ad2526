"""Tools shipped with taskflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


async def http_request(
    input: Dict[str, Any], client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    """Perform an HTTP request described by ``input``.

    Keys: ``url`` (required), ``method`` (default GET), ``headers``,
    ``params``, ``json``, ``data``, ``timeout`` in seconds. Non-2xx
    responses raise, which fails the calling step.
    """
    url = input.get("url")
    if not url:
        raise ValueError("http_request needs a url")
    method = str(input.get("method", "GET")).upper()

    owns_client = client is None
    client = client or httpx.AsyncClient(
        timeout=input.get("timeout", DEFAULT_HTTP_TIMEOUT)
    )
    try:
        logger.info(f"{method} {url}")
        response = await client.request(
            method,
            url,
            headers=input.get("headers"),
            params=input.get("params"),
            json=input.get("json"),
            data=input.get("data"),
        )
        response.raise_for_status()
    finally:
        if owns_client:
            await client.aclose()

    content_type = response.headers.get("content-type", "")
    body: Any = response.json() if "json" in content_type else response.text
    return {"status": response.status_code, "headers": dict(response.headers), "body": body}


def default_registry(client: Optional[httpx.AsyncClient] = None) -> ToolRegistry:
    """Registry preloaded with the built-in tools."""
    registry = ToolRegistry()

    async def _http_request(input: Dict[str, Any]) -> Dict[str, Any]:
        return await http_request(input, client=client)

    registry.register("http_request", _http_request)
    return registry
