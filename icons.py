#!/usr/bin/env python3
"""
Site icon discovery for feeds.

The resolver walks a fixed fallback chain and stops at the first success:

1. the feed's declared image, if a HEAD probe answers 200;
2. the first ``<link rel="...icon...">`` in the head of the site's origin
   page, probed over https and then over http;
3. ``/favicon.ico`` on the origin, if it answers 200 with a non-zero length.

Network failures in any step just move on to the next one. The parsing and
URL helpers are plain functions so each branch can be tested on its own.
"""

from asyncio import TimeoutError, get_running_loop
from concurrent.futures import Executor
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from aiohttp import ClientError
from bs4 import BeautifulSoup

from config import get_logger
from errors import FeedFetchError
from models import ParsedFeed
from telemetry import trace_span
from webclient import HTTP_OK, ProbeResult, format_client_error

# Module-specific logger
logger = get_logger("icons")

# Errors that mean "this step found nothing"
PROBE_ERRORS = (ClientError, TimeoutError, OSError, ValueError, FeedFetchError)


def origin_of(url: Optional[str]) -> Optional[str]:
    """Return scheme://host[:port] for an absolute URL, or None."""
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not host:
        return None
    if ':' in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}" if port else host
    return f"{parts.scheme}://{netloc}"


def with_scheme(url: str, scheme: str) -> str:
    """Return url with its scheme replaced."""
    return urlunsplit(urlsplit(url)._replace(scheme=scheme))


def favicon_url(origin: str) -> str:
    return urljoin(origin, '/favicon.ico')


def find_icon_href(html: str) -> Optional[str]:
    """Return the href of the first head <link> whose rel contains "icon".

    The match is a case-sensitive substring test on the whole rel value, so
    "icon", "shortcut icon" and "apple-touch-icon" all qualify.
    """
    soup = BeautifulSoup(html, 'html.parser')
    scope = soup.head or soup
    for link in scope.find_all('link'):
        rel = link.get('rel')
        if isinstance(rel, (list, tuple)):
            rel = ' '.join(rel)
        if not rel or 'icon' not in rel:
            continue
        href = (link.get('href') or '').strip()
        if href:
            return href
    return None


def is_real_favicon(probe: Optional[ProbeResult]) -> bool:
    """A favicon counts only if it answered 200 and did not report zero length."""
    if probe is None or probe.status != HTTP_OK:
        return False
    length = probe.content_length
    return length is None or str(length).strip() != '0'


class IconResolver:
    """Find a representative icon URL for a parsed feed.

    Args:
        client: Object providing ``head(url) -> ProbeResult`` and
            ``get_text(url) -> str`` coroutines (normally a WebClient).
        executor: Pool used for HTML parsing (the loop default when None).
    """

    def __init__(self, client, executor: Optional[Executor] = None) -> None:
        self.client = client
        self.executor = executor

    async def _probe(self, url: str) -> Optional[ProbeResult]:
        try:
            return await self.client.head(url)
        except PROBE_ERRORS as e:
            logger.debug(f"Icon probe failed for {url}: {format_client_error(e)}")
            return None

    async def _probe_ok(self, url: str) -> bool:
        probe = await self._probe(url)
        return probe is not None and probe.status == HTTP_OK

    async def _fetch_page(self, url: str) -> Optional[str]:
        try:
            return await self.client.get_text(url)
        except PROBE_ERRORS as e:
            logger.debug(f"Could not load {url} for icon discovery: {format_client_error(e)}")
            return None

    async def from_feed_image(self, feed: ParsedFeed) -> Optional[str]:
        if feed.image_url and await self._probe_ok(feed.image_url):
            logger.debug(f"Using feed icon {feed.image_url} for {feed.title}")
            return feed.image_url
        return None

    async def from_page_link(self, origin: str, label: Optional[str] = None) -> Optional[str]:
        html = await self._fetch_page(origin)
        if not html:
            return None
        try:
            href = await get_running_loop().run_in_executor(self.executor, find_icon_href, html)
        except Exception as e:
            logger.warning(f"Could not parse {origin} while looking for an icon: {e}")
            return None
        if not href:
            return None

        icon_url = urljoin(origin + '/', href)
        for scheme in ('https', 'http'):
            candidate = with_scheme(icon_url, scheme)
            if await self._probe_ok(candidate):
                logger.debug(f"Using link {candidate} for {label}")
                return candidate
        return None

    async def from_favicon(self, origin: str, label: Optional[str] = None) -> Optional[str]:
        candidate = favicon_url(origin)
        if is_real_favicon(await self._probe(candidate)):
            logger.debug(f"Using favicon {candidate} for {label}")
            return candidate
        return None

    @trace_span(
        "resolve_icon",
        tracer_name="icons",
        attr_from_args=lambda self, feed, fallback_link=None: {
            "feed.link": feed.link or fallback_link or "",
        },
    )
    async def resolve(self, feed: ParsedFeed, fallback_link: Optional[str] = None) -> Optional[str]:
        """Return the first icon URL found, or None."""
        icon = await self.from_feed_image(feed)
        if icon:
            return icon

        origin = origin_of(feed.link or fallback_link)
        if not origin:
            return None

        icon = await self.from_page_link(origin, feed.title)
        if icon:
            return icon

        return await self.from_favicon(origin, feed.title)
