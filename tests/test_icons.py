import pytest
from aiohttp import ClientConnectionError

from icons import IconResolver, favicon_url, find_icon_href, is_real_favicon, origin_of, with_scheme
from models import ParsedFeed
from webclient import ProbeResult


def test_origin_of_strips_path_query_and_fragment():
    assert origin_of("https://a.example/blog/index.html?x=1#top") == "https://a.example"
    assert origin_of("http://a.example:8080/feed") == "http://a.example:8080"


def test_origin_of_rejects_relative_or_missing_urls():
    assert origin_of(None) is None
    assert origin_of("") is None
    assert origin_of("/just/a/path") is None
    assert origin_of("not a url") is None


def test_with_scheme_and_favicon_url():
    assert with_scheme("https://a.example/i.png", "http") == "http://a.example/i.png"
    assert favicon_url("https://a.example") == "https://a.example/favicon.ico"


def test_find_icon_href_takes_first_icon_link_in_head():
    html = """
    <html><head>
      <link rel="stylesheet" href="/style.css">
      <link rel="apple-touch-icon" href="/touch.png">
      <link rel="icon" href="/icon.png">
    </head><body><link rel="icon" href="/body.png"></body></html>
    """
    assert find_icon_href(html) == "/touch.png"


def test_find_icon_href_matches_shortcut_icon():
    html = '<head><link rel="shortcut icon" href="/favicon.png"></head>'
    assert find_icon_href(html) == "/favicon.png"


def test_find_icon_href_is_case_sensitive_and_needs_href():
    assert find_icon_href('<head><link rel="ICON" href="/upper.png"></head>') is None
    assert find_icon_href('<head><link rel="icon"></head>') is None
    assert find_icon_href("<p>no links at all</p>") is None


def test_is_real_favicon():
    assert is_real_favicon(ProbeResult(200, "1234"))
    assert is_real_favicon(ProbeResult(200, None))
    assert not is_real_favicon(ProbeResult(200, "0"))
    assert not is_real_favicon(ProbeResult(404, "1234"))
    assert not is_real_favicon(None)


@pytest.mark.asyncio
async def test_feed_image_wins_when_it_answers(fake_client):
    fake_client.heads["https://a.example/logo.png"] = 200
    feed = ParsedFeed(title="A", link="https://a.example/", image_url="https://a.example/logo.png")

    icon = await IconResolver(fake_client).resolve(feed)

    assert icon == "https://a.example/logo.png"
    assert fake_client.urls("PAGE") == []


@pytest.mark.asyncio
async def test_page_link_used_when_feed_image_is_broken(fake_client):
    fake_client.heads["https://a.example/logo.png"] = 404
    fake_client.pages["https://a.example"] = '<head><link rel="icon" href="/i.png"></head>'
    fake_client.heads["https://a.example/i.png"] = 200
    feed = ParsedFeed(title="A", link="https://a.example/posts/", image_url="https://a.example/logo.png")

    icon = await IconResolver(fake_client).resolve(feed)

    assert icon == "https://a.example/i.png"


@pytest.mark.asyncio
async def test_page_link_falls_back_to_http(fake_client):
    fake_client.pages["https://a.example"] = '<head><link rel="icon" href="/i.png"></head>'
    fake_client.heads["https://a.example/i.png"] = ClientConnectionError("tls failure")
    fake_client.heads["http://a.example/i.png"] = 200
    feed = ParsedFeed(title="A", link="https://a.example/")

    icon = await IconResolver(fake_client).resolve(feed)

    assert icon == "http://a.example/i.png"
    assert fake_client.urls("HEAD") == ["https://a.example/i.png", "http://a.example/i.png"]


@pytest.mark.asyncio
async def test_absolute_icon_href_is_kept(fake_client):
    fake_client.pages["https://a.example"] = '<head><link rel="icon" href="https://cdn.example/i.png"></head>'
    fake_client.heads["https://cdn.example/i.png"] = 200
    feed = ParsedFeed(title="A", link="https://a.example/")

    assert await IconResolver(fake_client).resolve(feed) == "https://cdn.example/i.png"


@pytest.mark.asyncio
async def test_favicon_used_when_page_has_no_icon(fake_client):
    fake_client.pages["https://a.example"] = "<head><title>A</title></head>"
    fake_client.heads["https://a.example/favicon.ico"] = ProbeResult(200, "318")
    feed = ParsedFeed(title="A", link="https://a.example/")

    icon = await IconResolver(fake_client).resolve(feed)

    assert icon == "https://a.example/favicon.ico"


@pytest.mark.asyncio
async def test_empty_favicon_is_rejected(fake_client):
    fake_client.heads["https://a.example/favicon.ico"] = ProbeResult(200, "0")
    feed = ParsedFeed(title="A", link="https://a.example/")

    assert await IconResolver(fake_client).resolve(feed) is None


@pytest.mark.asyncio
async def test_nothing_found_when_every_step_fails(fake_client):
    fake_client.pages["https://a.example"] = ClientConnectionError("refused")
    fake_client.heads["https://a.example/favicon.ico"] = TimeoutError()
    feed = ParsedFeed(title="A", link="https://a.example/")

    assert await IconResolver(fake_client).resolve(feed) is None
    assert fake_client.urls("HEAD") == ["https://a.example/favicon.ico"]


@pytest.mark.asyncio
async def test_fallback_link_used_when_feed_has_no_link(fake_client):
    fake_client.heads["https://stored.example/favicon.ico"] = 200
    feed = ParsedFeed(title="A")

    icon = await IconResolver(fake_client).resolve(feed, fallback_link="https://stored.example/blog")

    assert icon == "https://stored.example/favicon.ico"


@pytest.mark.asyncio
async def test_no_origin_means_no_icon(fake_client):
    assert await IconResolver(fake_client).resolve(ParsedFeed(title="A")) is None
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_origin_page_is_parsed_on_the_given_executor(fake_client, monkeypatch):
    import threading
    from concurrent.futures import ThreadPoolExecutor

    import icons

    threads = []

    def recording_find(html):
        threads.append(threading.current_thread().name)
        return find_icon_href(html)

    monkeypatch.setattr(icons, "find_icon_href", recording_find)
    fake_client.pages["https://a.example"] = '<head><link rel="icon" href="/i.png"></head>'
    fake_client.heads["https://a.example/i.png"] = 200
    executor = ThreadPoolExecutor(thread_name_prefix="icon-test")
    try:
        icon = await IconResolver(fake_client, executor).resolve(ParsedFeed(title="A", link="https://a.example/"))
    finally:
        executor.shutdown(wait=True)

    assert icon == "https://a.example/i.png"
    assert threads and threads[0].startswith("icon-test")
