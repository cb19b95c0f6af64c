import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
import pytest_asyncio

from config import config
from errors import FeedFetchError
from fetcher import FeedFetcher
from models import DatabaseQueue
from webclient import ProbeResult


class FakeClient:
    """Stand-in for WebClient serving canned responses.

    Values may be exceptions, which are raised instead of returned. Unknown
    URLs behave like a 404.
    """

    def __init__(self, documents=None, pages=None, heads=None):
        self.documents = documents or {}
        self.pages = pages or {}
        self.heads = heads or {}
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    def _lookup(self, table, method, url):
        self.calls.append((method, url))
        value = table.get(url)
        if isinstance(value, BaseException):
            raise value
        return value

    async def get_bytes(self, url):
        value = self._lookup(self.documents, "GET", url)
        if value is None:
            raise FeedFetchError(url, status=404)
        return value.encode("utf-8") if isinstance(value, str) else value

    async def get_text(self, url):
        value = self._lookup(self.pages, "PAGE", url)
        if value is None:
            raise FeedFetchError(url, status=404)
        return value

    async def head(self, url):
        value = self._lookup(self.heads, "HEAD", url)
        if value is None:
            return ProbeResult(404, None)
        if isinstance(value, int):
            return ProbeResult(value, None)
        return value

    def urls(self, method):
        return [url for m, url in self.calls if m == method]


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def fetcher():
    feed_fetcher = FeedFetcher()
    yield feed_fetcher
    feed_fetcher.close()


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "FEED_SOURCES", {})
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()


def rss_document(items, title="Example", link="https://a.example/", image=None):
    """Build a small RSS 2.0 document from item dicts."""
    parts = []
    for item in items:
        fields = []
        if "guid" in item:
            fields.append(f"<guid isPermaLink=\"false\">{item['guid']}</guid>")
        if "title" in item:
            fields.append(f"<title>{item['title']}</title>")
        if "link" in item:
            fields.append(f"<link>{item['link']}</link>")
        if "pubDate" in item:
            fields.append(f"<pubDate>{item['pubDate']}</pubDate>")
        if "description" in item:
            fields.append(f"<description><![CDATA[{item['description']}]]></description>")
        if "content" in item:
            fields.append(f"<content:encoded><![CDATA[{item['content']}]]></content:encoded>")
        parts.append("<item>" + "".join(fields) + "</item>")
    image_xml = f"<image><url>{image}</url><title>{title}</title><link>{link}</link></image>" if image else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">'
        f"<channel><title>{title}</title><link>{link}</link><description>test</description>{image_xml}"
        + "".join(parts)
        + "</channel></rss>"
    )


@pytest.fixture
def rss():
    return rss_document
