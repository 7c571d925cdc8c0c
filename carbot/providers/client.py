"""
Provider transport: one HTTP POST per attempt.

Turns every way a call can go wrong into the CarBot error taxonomy so the
retry controller can decide what to do:

    timeout / connection reset / protocol error   → ProviderRequestError(retryable)
    HTTP 429, 5xx                                  → ProviderRequestError(retryable)
    HTTP 401, 403, other 4xx                       → ProviderRequestError(non-retryable)
    2xx but body isn't JSON                        → MalformedResponseError
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from carbot.errors import MalformedResponseError, ProviderRequestError
from carbot.providers.adapters import WireRequest

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def is_retryable_status(status_code: int) -> bool:
    """Rate limits and gateway/server errors are transient; everything else 4xx is not."""
    return status_code in RETRYABLE_STATUS


class ProviderClient:
    """Sends wire requests and returns the decoded JSON body."""

    def __init__(self, timeout: float = 12.0, user_agent: str = "CarBot/1.0"):
        self.timeout = timeout
        self.user_agent = user_agent

    async def send(self, request: WireRequest, timeout: float | None = None) -> dict:
        """POST the request. Raises ProviderRequestError / MalformedResponseError."""
        limit = timeout or self.timeout
        try:
            return await asyncio.wait_for(self._post(request, limit), timeout=limit)
        except asyncio.TimeoutError as e:
            raise ProviderRequestError(f"Timeout after {limit}s", retryable=True) from e

    async def _post(self, request: WireRequest, timeout: float) -> dict:
        headers = {"User-Agent": self.user_agent, **request.headers}
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(request.url, json=request.body, headers=headers)
        except httpx.TimeoutException as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Provider call to %s timed out after %.0fms", request.url, latency)
            raise ProviderRequestError(f"Timeout after {timeout}s", retryable=True) from e
        except httpx.TransportError as e:
            # ConnectError, ReadError, RemoteProtocolError, ...
            logger.warning("Provider call to %s failed: %s", request.url, e)
            raise ProviderRequestError(f"Connection error: {e}", retryable=True) from e

        latency = (time.monotonic() - t0) * 1000
        if resp.status_code >= 400:
            retryable = is_retryable_status(resp.status_code)
            logger.debug(
                "Provider %s returned HTTP %d in %.0fms (retryable=%s)",
                request.url, resp.status_code, latency, retryable,
            )
            raise ProviderRequestError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
                retryable=retryable,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Non-JSON body from {request.url}: {resp.text[:200]}"
            ) from e

        logger.debug("Provider %s answered in %.0fms", request.url, latency)
        return data
