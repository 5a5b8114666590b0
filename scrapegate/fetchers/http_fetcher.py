"""
HTTP Fetcher Module

Lightweight async HTTP client for requests that need no rendering.
A single direct fetch: no session, no retry, no failover, no challenge handling.
"""

import httpx

from scrapegate.config import config
from scrapegate.errors import NavigationFailure
from scrapegate.models import NavigationResponse


class HTTPFetcher:
    """
    Async HTTP fetcher for the lightweight path.

    Example:
        fetcher = HTTPFetcher()
        response = await fetcher.fetch("https://example.com")
    """

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the HTTP fetcher.

        Args:
            timeout: Request timeout in seconds (default: navigation timeout)
            transport: Custom httpx transport
        """
        self._timeout = timeout or config.navigation.timeout
        self._transport = transport

    async def fetch(self, url: str, headers: dict | None = None) -> NavigationResponse:
        """
        Fetch a URL once.

        Raises:
            NavigationFailure: on timeout or transport error
        """
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                http2=self._transport is None,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise NavigationFailure(url, "Request timed out") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NavigationFailure(url, str(e)) from e

        return NavigationResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=dict(response.headers),
            url=str(response.url),
            body=response.content,
        )
