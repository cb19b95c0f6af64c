import time
from datetime import datetime, timezone

import pytest
from aiohttp import ClientConnectionError

from errors import FeedFetchError, FeedParseError
from fetcher import FeedFetcher
from models import ParsedEntry
from utils import extract_content

ATOM_DOCUMENT = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <link href="https://b.example/" rel="alternate"/>
  <logo>https://b.example/logo.png</logo>
  <id>urn:uuid:feed</id>
  <updated>2024-03-01T10:00:00Z</updated>
  <entry>
    <title>First</title>
    <id>urn:uuid:entry-1</id>
    <link href="https://b.example/first"/>
    <updated>2024-03-01T10:00:00Z</updated>
    <summary>Short summary</summary>
    <content type="html">&lt;p&gt;Rich &lt;a href="/x" style="color:red"&gt;link&lt;/a&gt;&lt;/p&gt;</content>
  </entry>
  <entry>
    <title>Plain</title>
    <id>urn:uuid:entry-2</id>
    <updated>2024-03-02T10:00:00Z</updated>
    <content type="text">just text</content>
  </entry>
</feed>
"""


def ms(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def test_parse_rss_document(rss):
    fetcher = FeedFetcher()
    document = rss(
        [
            {"guid": "g1", "title": "Hello", "link": "https://a.example/hello",
             "pubDate": "Mon, 01 Jan 2024 00:00:00 +0000",
             "description": "summary", "content": "<p>hi</p>"},
            {"title": "No guid", "link": "https://a.example/other"},
        ],
        title="Feed A",
        image="https://a.example/image.png",
    )

    parsed = fetcher.parse(document, "https://a.example/feed.xml")

    assert parsed.title == "Feed A"
    assert parsed.link == "https://a.example/"
    assert parsed.image_url == "https://a.example/image.png"
    assert len(parsed.entries) == 2

    first = parsed.entries[0]
    assert first.guid == "g1"
    assert first.title == "Hello"
    assert first.link == "https://a.example/hello"
    assert first.encoded_content == "<p>hi</p>"
    assert first.summary == "summary"
    assert fetcher.parse_date(first) == ms(2024, 1, 1)

    second = parsed.entries[1]
    assert second.guid is None
    assert second.link == "https://a.example/other"
    fetcher.close()


def test_parse_atom_document():
    fetcher = FeedFetcher()
    parsed = fetcher.parse(ATOM_DOCUMENT, "https://b.example/atom.xml")

    assert parsed.title == "Atom Example"
    assert parsed.link == "https://b.example/"
    assert parsed.image_url == "https://b.example/logo.png"

    rich, plain = parsed.entries
    assert rich.id == "urn:uuid:entry-1"
    assert 'style="color:red"' in rich.encoded_content
    assert rich.summary == "Short summary"
    assert plain.encoded_content is None
    assert plain.content == "just text"
    assert fetcher.parse_date(plain) == ms(2024, 3, 2, 10)
    fetcher.close()


def test_entry_markup_reaches_storage_unchanged(rss):
    markup = "<p>a<br>b <a href=rel/x>y</a><img src=pic.png></p>"
    fetcher = FeedFetcher()

    parsed = fetcher.parse(rss([{"guid": "1", "title": "T", "content": markup}]), "https://a.example/feed.xml")

    entry = parsed.entries[0]
    assert entry.encoded_content == markup
    assert extract_content(entry) == markup
    fetcher.close()


def test_non_feed_document_raises_parse_error():
    fetcher = FeedFetcher()
    with pytest.raises(FeedParseError):
        fetcher.parse(b"this is not xml at all {", "https://broken.example/feed")
    fetcher.close()


def test_parse_date_without_weekday():
    fetcher = FeedFetcher()
    entry = ParsedEntry(published="17 Nov 2025 00:00:00 +0000")
    assert fetcher.parse_date(entry) == ms(2025, 11, 17)


def test_parse_date_with_weekday():
    fetcher = FeedFetcher()
    entry = ParsedEntry(published="Sat, 15 Nov 2025 16:00:00 +0000")
    assert fetcher.parse_date(entry) == ms(2025, 11, 15, 16)


def test_parse_date_iso():
    fetcher = FeedFetcher()
    entry = ParsedEntry(published="2024-01-01T00:00:00Z")
    assert fetcher.parse_date(entry) == ms(2024, 1, 1)


@pytest.mark.parametrize("published", [None, "", "not a date"])
def test_missing_or_invalid_date_defaults_to_now(published):
    fetcher = FeedFetcher()
    before = int(time.time() * 1000)
    value = fetcher.parse_date(ParsedEntry(published=published))
    after = int(time.time() * 1000)
    assert before <= value <= after


@pytest.mark.asyncio
async def test_fetch_downloads_and_parses(fake_client, rss):
    fake_client.documents["https://a.example/feed.xml"] = rss([{"guid": "x", "title": "X"}])
    fetcher = FeedFetcher()

    parsed = await fetcher.fetch("https://a.example/feed.xml", fake_client)

    assert [entry.guid for entry in parsed.entries] == ["x"]
    fetcher.close()


@pytest.mark.asyncio
async def test_fetch_propagates_http_errors(fake_client):
    fetcher = FeedFetcher()
    with pytest.raises(FeedFetchError):
        await fetcher.fetch("https://missing.example/feed.xml", fake_client)
    fetcher.close()


@pytest.mark.asyncio
async def test_fetch_wraps_transport_errors(fake_client):
    fake_client.documents["https://down.example/feed"] = ClientConnectionError("connection refused")
    fetcher = FeedFetcher()

    with pytest.raises(FeedFetchError) as excinfo:
        await fetcher.fetch("https://down.example/feed", fake_client)

    assert "connection refused" in str(excinfo.value)
    fetcher.close()
