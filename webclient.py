#!/usr/bin/env python3
"""
Outbound HTTP capability shared by the fetcher and the icon resolver.

Wraps one aiohttp ClientSession per ingestion cycle. Every request carries an
explicit ClientTimeout so a slow source cannot hang its feed task.
"""

from collections import namedtuple
from typing import List, Optional

from aiohttp import ClientSession, ClientTimeout, ClientError

from config import config, get_logger
from errors import FeedFetchError

# Module-specific logger
logger = get_logger("webclient")

HTTP_OK = 200

# content_length is the raw header value so "0" and "absent" stay distinct
ProbeResult = namedtuple("ProbeResult", ["status", "content_length"])


class WebClient:
    """Small async HTTP client: full-body GETs and HEAD probes."""

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self.timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)
        self.probe_timeout = ClientTimeout(total=probe_timeout or config.PROBE_TIMEOUT)
        self.headers = {'User-Agent': config.USER_AGENT}

    async def __aenter__(self) -> "WebClient":
        if self._session is None:
            self._session = ClientSession(headers=self.headers)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("WebClient used outside of 'async with'")
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def get_bytes(self, url: str) -> bytes:
        """GET a document body, raising FeedFetchError on non-2xx responses."""
        async with self.session.get(
            url,
            headers=self.headers,
            timeout=self.timeout,
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            if not HTTP_OK <= response.status < 300:
                raise FeedFetchError(url, status=response.status)
            return await response.read()

    async def get_text(self, url: str) -> str:
        """GET an HTML page with the probe timeout; non-2xx yields FeedFetchError."""
        async with self.session.get(
            url,
            headers=self.headers,
            timeout=self.probe_timeout,
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            if not HTTP_OK <= response.status < 300:
                raise FeedFetchError(url, status=response.status)
            return await response.text(errors='replace')

    async def head(self, url: str) -> ProbeResult:
        """Lightweight existence check: status code and Content-Length, no body."""
        async with self.session.head(
            url,
            headers=self.headers,
            timeout=self.probe_timeout,
            allow_redirects=True,
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            return ProbeResult(response.status, response.headers.get('Content-Length'))


def format_client_error(error: BaseException) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


__all__ = ["WebClient", "ProbeResult", "ClientError", "format_client_error", "HTTP_OK"]
