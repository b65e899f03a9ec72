"""
Shared httpx client for provider calls (token endpoint, identity, watch/stop).
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

_SENSITIVE_HEADERS = {"authorization", "x-shopify-access-token", "client-secret", "x-api-key"}


def sanitize_headers(headers: httpx.Headers) -> dict:
    """Copy headers for logging with credentials redacted."""
    return {
        k: ("[REDACTED]" if k.lower() in _SENSITIVE_HEADERS else v)
        for k, v in headers.items()
    }


async def _log_request(request: httpx.Request) -> None:
    logger.debug(
        "Provider request %s %s headers=%s",
        request.method,
        request.url.copy_with(query=None),
        sanitize_headers(request.headers),
    )


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    level = logging.DEBUG if response.status_code < 400 else logging.WARNING
    logger.log(
        level,
        "Provider response %s %s → %d",
        request.method,
        request.url.copy_with(query=None),
        response.status_code,
    )


def build_provider_client(
    timeout: float = 30.0,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Build the process-wide client.  Every call gets ``timeout`` seconds;
    expiry surfaces as ``httpx.TimeoutException`` which callers treat as
    a transient failure.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        headers={
            "User-Agent": "platform-connectors/1.0",
            "Accept": "application/json",
        },
        event_hooks={"request": [_log_request], "response": [_log_response]},
        transport=transport,
    )
