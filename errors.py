#!/usr/bin/env python3
"""Common error types shared across modules.

Kept in their own module to avoid circular imports between the fetcher,
the database queue and the orchestrator.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for feed ingestion errors."""


class FeedFetchError(IngestError):
    """Raised when a feed document cannot be downloaded.

    Attributes:
        url: The feed URL that was requested.
        status: HTTP status code, when a response was received.
    """

    def __init__(self, url: str, status: Optional[int] = None, message: Optional[str] = None):
        detail = message or (f"HTTP {status}" if status is not None else "request failed")
        super().__init__(f"Error fetching {url}: {detail}")
        self.url = url
        self.status = status


class FeedParseError(IngestError):
    """Raised when a downloaded document cannot be parsed as a feed."""

    def __init__(self, url: str, reason: Optional[str] = None):
        super().__init__(f"Unable to parse feed {url}: {reason or 'unknown format'}")
        self.url = url
        self.reason = reason


class PersistenceError(IngestError):
    """Raised when a database operation fails."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"Database operation {operation} failed: {message}")
        self.operation = operation


__all__ = ["IngestError", "FeedFetchError", "FeedParseError", "PersistenceError"]
