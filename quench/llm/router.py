"""Inference endpoint routing with single failover.

A fine-tuned model is served by one or more interchangeable inference
servers. Each request goes to a randomly chosen server; if that host is
unreachable the request is sent once more to the next server in the list.
Any other failure, or a failure of the backup, goes straight to the caller.
"""

import random
from typing import Any, Optional, Sequence

import httpx
import structlog

from quench.core.errors import NoEndpointsError, is_host_unreachable

log = structlog.get_logger()

DEFAULT_TIMEOUT = 120.0


def plan_attempts(endpoints: Sequence[str], rng: random.Random) -> tuple[str, str]:
    """Choose the primary and backup endpoint for one request.

    Args:
        endpoints: Candidate endpoint URLs, in configured order
        rng: Random source used for the starting index

    Returns:
        ``(primary, backup)`` where backup is the endpoint after the primary,
        wrapping around. With a single endpoint both are the same URL.

    Raises:
        NoEndpointsError: If ``endpoints`` is empty
    """
    if not endpoints:
        raise NoEndpointsError()

    index = rng.randrange(len(endpoints))
    backup_index = (index + 1) % len(endpoints)
    return endpoints[index], endpoints[backup_index]


class InferenceRouter:
    """Sends completion requests to a model's inference endpoints."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the router.

        Args:
            client: HTTP client to use (a private one is created if None)
            rng: Random source for endpoint selection
            timeout: Request timeout in seconds for the private client
        """
        self._client = client
        self._owns_client = client is None
        self.rng = rng or random.Random()
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if the router created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "InferenceRouter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def dispatch(self, endpoints: Sequence[str], body: dict[str, Any]) -> httpx.Response:
        """Send a request body to one of the endpoints.

        Args:
            endpoints: Endpoint URLs of the model
            body: JSON body to POST

        Returns:
            The HTTP response of the endpoint that answered

        Raises:
            NoEndpointsError: If ``endpoints`` is empty (before any request)
            httpx.HTTPError: Transport errors, unmodified
        """
        primary, backup = plan_attempts(endpoints, self.rng)

        try:
            return await self._send(primary, body)
        except httpx.TransportError as e:
            if not is_host_unreachable(e):
                raise
            log.warning("inference_host_unreachable", url=primary, backup=backup)

        return await self._send(backup, body)

    async def _send(self, url: str, body: dict[str, Any]) -> httpx.Response:
        log.debug("inference_request", url=url)
        return await self.client.post(url, json=body)
