"""Throttled httpx client that classifies upstream failures."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from hdb_insights.errors import RateLimitedError, UpstreamError
from hdb_insights.logging import get_logger

logger = get_logger(__name__)

_USER_AGENT = "hdb-insights/0.1 (+https://data.gov.sg)"


def raise_for_upstream_status(response: httpx.Response) -> None:
    """Map an unsuccessful response onto the upstream error hierarchy.

    Raises:
        RateLimitedError: On 429.
        UpstreamError: On any other 4xx (fatal) or 5xx (transient).
    """
    status = response.status_code
    if status < 400:
        return
    url = str(response.request.url)
    if status == 429:
        raise RateLimitedError(f"rate limited by {response.request.url.host}")
    if status >= 500:
        raise UpstreamError(f"HTTP {status} from {url}", status_code=status, transient=True)
    raise UpstreamError(f"HTTP {status} from {url}", status_code=status, transient=False)


class RateLimitedClient:
    """An httpx.AsyncClient wrapper enforcing a minimum interval between requests.

    Every request waits for the throttle, so concurrent callers are spaced
    out rather than fired together.
    """

    def __init__(
        self,
        *,
        min_interval: float = 0.0,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            min_interval: Minimum seconds between request starts.
            timeout: Request timeout, used when the client is created lazily.
            client: Pre-built client (tests). Closed by ``close()`` either way.
        """
        self._client = client
        self._timeout = timeout
        self._min_interval = min_interval
        self._lock = asyncio.Lock()
        self._next_time: float = 0.0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            )
        return self._client

    async def _throttle(self) -> None:
        """Ensure minimum interval between requests."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            wait = self._next_time - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            self._next_time = loop.time() + self._min_interval

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a throttled request and return the successful response.

        Raises:
            RateLimitedError: On 429.
            UpstreamError: On timeouts, transport errors and other failed statuses.
        """
        client = await self._get_client()
        await self._throttle()
        try:
            response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"timeout calling {url}", transient=True) from e
        except httpx.TransportError as e:
            raise UpstreamError(f"transport error calling {url}: {e}", transient=True) from e
        raise_for_upstream_status(response)
        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
