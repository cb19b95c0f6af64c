#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

This module downloads one feed document, parses it with feedparser and
normalizes the result into ParsedFeed/ParsedEntry records. Transport and
parse failures propagate to the caller, which isolates them per feed.
"""

from asyncio import get_running_loop, TimeoutError
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Any, Optional

import feedparser
import feedparser.datetimes
from aiohttp import ClientError

from config import get_logger
from errors import FeedFetchError, FeedParseError
from models import ParsedEntry, ParsedFeed, now_ms
from telemetry import get_tracer, trace_span
from webclient import format_client_error

# Module-specific logger
logger = get_logger("fetcher")
_tracer = get_tracer("fetcher")

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')

# RFC 2822 variants seen in the wild, including the form without a weekday
CUSTOM_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
)


def _get(mapping: Any, key: str) -> Any:
    """Fetch a feedparser field, treating missing keys and empty strings alike."""
    if mapping is None:
        return None
    try:
        value = mapping.get(key)
    except (AttributeError, KeyError):
        return None
    return value if value not in ('', None) else None


class FeedFetcher:
    """Retrieve and parse single feeds."""

    def __init__(self) -> None:
        self.executor = ThreadPoolExecutor(thread_name_prefix="feedparser")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, client: {"feed.url": url},
    )
    async def fetch(self, url: str, client) -> ParsedFeed:
        """Download and parse the feed at url.

        Raises:
            FeedFetchError: on HTTP or transport failures.
            FeedParseError: if the document is not a usable feed.
        """
        logger.debug(f"Fetching feed {url}")
        try:
            content = await client.get_bytes(url)
        except (ClientError, TimeoutError) as e:
            raise FeedFetchError(url, message=format_client_error(e)) from e

        return await self.run_in_executor(self.parse, content, url)

    def parse(self, content: bytes | str, url: str = "") -> ParsedFeed:
        """Parse a feed document into a ParsedFeed."""
        parsed = feedparser.parse(content, sanitize_html=False, resolve_relative_uris=False)
        feed_meta = parsed.get('feed', {})
        entries = parsed.get('entries') or []

        reason = None
        if parsed.get('bozo'):
            reason = str(parsed.get('bozo_exception', 'malformed document'))
            if not entries and not _get(feed_meta, 'title') and not _get(feed_meta, 'link'):
                raise FeedParseError(url, reason)
            logger.warning(f"Feed parsing warning for {url}: {reason}")

        version = parsed.get('version') or "unknown"
        logger.debug(f"Feed {url} parsed as {version} format with {len(entries)} entries")

        return ParsedFeed(
            title=_get(feed_meta, 'title'),
            link=_get(feed_meta, 'link'),
            image_url=self._image_url(feed_meta),
            version=version,
            entries=[self.normalize_entry(entry) for entry in entries],
            bozo_exception=reason,
        )

    def _image_url(self, feed_meta: Any) -> Optional[str]:
        image = _get(feed_meta, 'image')
        return _get(image, 'href') or _get(image, 'url') or _get(feed_meta, 'logo') or _get(feed_meta, 'icon')

    def normalize_entry(self, entry: Any) -> ParsedEntry:
        """Map a feedparser entry onto ParsedEntry."""
        encoded_content = None
        plain_content = None
        for item in _get(entry, 'content') or []:
            value = _get(item, 'value')
            if not value:
                continue
            if (_get(item, 'type') or 'text/html') in HTML_CONTENT_TYPES:
                encoded_content = encoded_content or value
            else:
                plain_content = plain_content or value

        published = _get(entry, 'published') or _get(entry, 'updated') or _get(entry, 'created')
        published_parsed = (
            _get(entry, 'published_parsed') or _get(entry, 'updated_parsed') or _get(entry, 'created_parsed')
        )

        return ParsedEntry(
            guid=_get(entry, 'guid'),
            id=_get(entry, 'id'),
            link=_get(entry, 'link'),
            title=_get(entry, 'title'),
            published=published,
            published_parsed=published_parsed,
            encoded_content=encoded_content,
            content=plain_content,
            summary=_get(entry, 'summary'),
        )

    def parse_date(self, entry: ParsedEntry) -> int:
        """Publication time of an entry in epoch milliseconds, or now if unknown."""
        timestamp = self._struct_to_ms(entry.published_parsed)
        if timestamp is None and entry.published:
            timestamp = self._parse_date_string(entry.published)
        if timestamp is None:
            if entry.published:
                logger.debug(f"Invalid pub date '{entry.published}', using current time")
            return now_ms()
        return timestamp

    def _struct_to_ms(self, value: Any) -> Optional[int]:
        if not value:
            return None
        try:
            # feedparser normalizes *_parsed structs to UTC
            return timegm(tuple(value)) * 1000
        except (OverflowError, ValueError, TypeError):
            return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        parsers = (
            self._parse_with_feedparser,
            self._parse_with_email_utils,
            self._parse_with_custom_formats,
        )
        for parser in parsers:
            timestamp = parser(date_str.strip())
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            return self._struct_to_ms(feedparser.datetimes._parse_date(date_str))
        except (ValueError, TypeError, AttributeError, OSError):
            return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, OverflowError, IndexError):
            return None
        if dt is None:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)

    def _parse_with_custom_formats(self, date_str: str) -> Optional[int]:
        for fmt in CUSTOM_DATE_FORMATS:
            try:
                dt = datetime.strptime(date_str, fmt)
            except (ValueError, TypeError):
                continue
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
        return None

    def close(self) -> None:
        """Release the parser thread pool."""
        self.executor.shutdown(wait=False)
