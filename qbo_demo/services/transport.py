"""
Outbound HTTP with a fixed retry policy.

Every call to Intuit (OAuth, Accounting REST, Project-Management GraphQL)
goes through QuickBooksTransport: up to HTTP_MAX_ATTEMPTS attempts with a
fixed HTTP_RETRY_BACKOFF pause, retrying only connection/timeout failures,
HTTP 429 and HTTP 5xx. Other responses are returned to the caller as-is.
"""

import asyncio
import logging
from typing import Optional

import httpx

from qbo_demo.config import Settings, settings as default_settings
from qbo_demo.exceptions import TransientTransportError

logger = logging.getLogger(__name__)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


class QuickBooksTransport:
    """Thin httpx.AsyncClient wrapper shared by the QuickBooks services."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or default_settings
        self._client = client or httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT)
        self.max_attempts = max(1, self.settings.HTTP_MAX_ATTEMPTS)
        self.backoff = self.settings.HTTP_RETRY_BACKOFF

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request, retrying transient failures.

        Raises:
            TransientTransportError: every attempt failed to connect, timed
                out, or answered 429 / 5xx.
        """
        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"{method} {url} failed (attempt {attempt}/{self.max_attempts}): {last_error}")
            else:
                if not is_retryable_status(response.status_code):
                    return response
                last_error = f"HTTP {response.status_code}: {response.text[:500]}"
                logger.warning(
                    f"{method} {url} returned {response.status_code} (attempt {attempt}/{self.max_attempts})"
                )

            if attempt < self.max_attempts and self.backoff > 0:
                await asyncio.sleep(self.backoff)

        raise TransientTransportError(
            "QuickBooks is temporarily unreachable. Please try again.",
            detail=last_error,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
