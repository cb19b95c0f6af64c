#!/usr/bin/env python3
"""
Utility functions for the feed ingester.

This module holds the pure, per-entry helpers used by the orchestrator:
article identity resolution, content selection and HTML sanitizing, plus
a duration formatter for log messages.
"""

from hashlib import sha256
from typing import Optional

from bs4 import BeautifulSoup

from config import get_logger
from models import ParsedEntry

# Module-specific logger
logger = get_logger("utils")

HASH_PREFIX = "sha256:"


def _first_present(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


def content_hash(title: Optional[str], summary: Optional[str], content: Optional[str]) -> str:
    """Deterministic, order-sensitive identifier for an entry without guid/id/link."""
    combined = f"{title or ''}{summary or ''}{content or ''}"
    return HASH_PREFIX + sha256(combined.encode('utf-8')).hexdigest()


def resolve_article_id(entry: ParsedEntry) -> str:
    """Return a stable external identifier for an entry.

    First non-empty of guid, id and link; otherwise a hash of title, summary
    and content. Entries with nothing at all still get the (shared) hash of
    the empty string.
    """
    identifier = _first_present(entry.guid, entry.id, entry.link)
    if identifier:
        return identifier
    return content_hash(entry.title, entry.summary, _first_present(entry.encoded_content, entry.content))


def select_raw_content(entry: ParsedEntry) -> Optional[str]:
    """Pick the richest content field: encoded content, plain content, then summary."""
    return _first_present(entry.encoded_content, entry.content, entry.summary)


def sanitize_content(raw: Optional[str]) -> Optional[str]:
    """Strip inline styles from links in an HTML fragment.

    Returns None for absent content. Markup is only re-serialized when an
    attribute was actually removed, so untouched content is stored exactly as
    received. Parsing problems never propagate: the raw string is returned.
    """
    if not raw:
        return None

    try:
        soup = BeautifulSoup(raw, 'html.parser')
        changed = False
        for anchor in soup.find_all('a'):
            if anchor.has_attr('style'):
                del anchor['style']
                changed = True
        if not changed:
            return raw
        return str(soup)
    except Exception as e:
        logger.warning(f"Error processing document content, keeping raw content: {e}")
        return raw


def extract_content(entry: ParsedEntry) -> Optional[str]:
    """Select and sanitize the content of an entry."""
    return sanitize_content(select_raw_content(entry))


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 2m 3s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
