"""
HTTP webhook client shared by the notification and billing collaborators.

Deliveries are fire-and-forget: the caller never waits on, or fails
because of, a collaborator. Failures are logged.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from clinicflow.config import get_settings

logger = logging.getLogger(__name__)


class WebhookClient:
    """
    Posts JSON payloads to a single webhook URL.

    When no URL is configured the payload is only logged.
    """

    name = "webhook"

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            url: Endpoint receiving the payloads (None disables delivery)
            timeout: Request timeout in seconds (defaults to settings)
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        settings = get_settings()
        self.url = url
        self.timeout = timeout or settings.collaborator_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def post(self, payload: dict[str, Any]) -> bool:
        """Deliver one payload.

        Args:
            payload: JSON body

        Returns:
            True if the endpoint accepted it
        """
        if not self.url:
            logger.info(f"[{self.name}] no endpoint configured, payload: {payload}")
            return False

        client = await self._get_client()
        try:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"[{self.name}] delivery failed: {e}")
            return False

    def submit(self, payload: dict[str, Any]) -> asyncio.Task:
        """Schedule delivery without waiting for it."""
        task = asyncio.create_task(self.post(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Flush pending deliveries and close the HTTP client."""
        await self.drain()
        if self._client:
            await self._client.aclose()
            self._client = None
