"""
Wrapper around httpx for a single audit session
"""

import logging
from typing import Dict, Any, List, Optional, Tuple, Union
import httpx

logger = logging.getLogger(__name__)


class HttpSession:
    """Wrapper around httpx.AsyncClient. Issues exactly one attempt per request."""

    def __init__(self,
                 timeout: float = 15.0,
                 verify_ssl: bool = True,
                 follow_redirects: bool = False,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize HTTP session.

        Args:
            timeout: Request timeout in seconds
            verify_ssl: Whether to verify SSL certificates
            follow_redirects: Whether to follow HTTP redirects
            transport: Optional transport override (used by tests)
        """
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.follow_redirects = follow_redirects
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def start(self):
        """Initialize the HTTP client."""
        if self._client is None:
            # No default headers: every identity supplies its own per request
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                verify=self.verify_ssl,
                follow_redirects=self.follow_redirects,
                transport=self.transport
            )

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(self,
                     method: str,
                     url: str,
                     headers: Optional[Dict[str, str]] = None,
                     json: Optional[Union[Dict[str, Any], list]] = None,
                     params: Optional[Union[Dict[str, str], List[Tuple[str, str]]]] = None) -> httpx.Response:
        """
        Make a single HTTP request.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Target URL
            headers: Request headers
            json: JSON data (will be serialized)
            params: URL parameters

        Returns:
            httpx.Response object

        Raises:
            httpx.RequestError: On timeout, connection or protocol failure
        """
        if not self._client:
            await self.start()

        logger.debug(f"Making {method} request to {url}")

        response = await self._client.request(
            method=method,
            url=url,
            headers=headers or {},
            json=json,
            params=params
        )

        logger.debug(f"Response: {response.status_code} for {method} {url}")
        return response
