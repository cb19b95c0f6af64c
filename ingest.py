#!/usr/bin/env python3
"""
Ingestion orchestrator.

One cycle loads every feed, skips disabled ones and runs an independent task
per enabled feed: fetch and parse, resolve an icon when none is stored, then
upsert every entry keyed by (article id, feed id). Each task has its own
error boundary, so one broken source only shows up in the log.
"""

from asyncio import Semaphore, create_task, gather
from time import time
from typing import Callable, List, Optional

from config import config, get_logger
from fetcher import FeedFetcher
from icons import IconResolver
from models import DatabaseQueue, FeedSource, ParsedFeed
from telemetry import get_tracer, init_telemetry, trace_span
from utils import extract_content, format_duration, resolve_article_id
from webclient import WebClient

# Module-specific logger
logger = get_logger("ingest")
init_telemetry("feed-ingest")
_tracer = get_tracer("ingest")

DEFAULT_TITLE = "Untitled"


class IngestionRun:
    """Progress counters for a single cycle."""

    def __init__(self, total: int) -> None:
        self.total = total
        self.remaining = total
        self.succeeded = 0
        self.failed = 0
        self.articles = 0
        self.started = time()

    def finish_feed(self, success: bool, articles: int = 0) -> None:
        self.remaining -= 1
        self.articles += articles
        if success:
            self.succeeded += 1
        else:
            self.failed += 1

    @property
    def elapsed(self) -> float:
        return time() - self.started

    def __repr__(self) -> str:
        return (f"IngestionRun(total={self.total}, succeeded={self.succeeded}, "
                f"failed={self.failed}, articles={self.articles})")


class IngestionOrchestrator:
    """Fan out fetch+process work across all enabled feeds.

    Args:
        db: A started DatabaseQueue.
        fetcher: FeedFetcher used to download and parse documents.
        client_factory: Callable returning an async context manager that yields
            the HTTP client for one cycle (defaults to WebClient).
        max_concurrency: Upper bound on feeds processed at once; 0 for no limit.
    """

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: Optional[FeedFetcher] = None,
        client_factory: Optional[Callable] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.db = db
        self.fetcher = fetcher or FeedFetcher()
        self.client_factory = client_factory or WebClient
        self.max_concurrency = config.MAX_CONCURRENT_FEEDS if max_concurrency is None else max_concurrency

    async def sync_feed_sources(self) -> None:
        """Register feeds declared in feeds.yaml and apply their disabled flag."""
        for slug, source in config.FEED_SOURCES.items():
            created = await self.db.execute(
                'register_feed', slug=slug, url=source['url'], disabled=source.get('disabled', False)
            )
            if created:
                logger.info(f"Registered new feed {slug} ({source['url']})")

    @trace_span("ingest.cycle", tracer_name="ingest")
    async def run_ingestion_cycle(self) -> IngestionRun:
        """Run one complete ingestion pass and wait for every feed to settle."""
        logger.info(">>> Downloading feeds...")
        await self.sync_feed_sources()
        feeds: List[FeedSource] = await self.db.execute('list_feeds')

        enabled = []
        for feed in feeds:
            if feed.disabled:
                logger.debug(f"Skipping disabled feed {feed.id} ({feed.url})")
                continue
            enabled.append(feed)

        run = IngestionRun(len(enabled))
        semaphore = Semaphore(self.max_concurrency) if self.max_concurrency > 0 else None

        async with self.client_factory() as client:
            resolver = IconResolver(client, self.fetcher.executor)

            async def guarded(feed: FeedSource) -> None:
                if semaphore is None:
                    await self._ingest_feed_isolated(feed, client, resolver, run)
                    return
                async with semaphore:
                    await self._ingest_feed_isolated(feed, client, resolver, run)

            tasks = [create_task(guarded(feed)) for feed in enabled]
            await gather(*tasks)

        logger.info(
            f">>> Finished downloading {run.total} feeds in {format_duration(run.elapsed)} "
            f"({run.succeeded} ok, {run.failed} failed, {run.articles} articles)"
        )
        return run

    async def _ingest_feed_isolated(self, feed: FeedSource, client, resolver: IconResolver, run: IngestionRun) -> None:
        """Error boundary around one feed's pipeline."""
        try:
            articles = await self.ingest_feed(feed, client, resolver)
        except Exception as e:
            run.finish_feed(False)
            logger.error(f">>> Error updating {feed.url}: {e}")
            await self._record_failure(feed, e)
            return

        run.finish_feed(True, articles)
        logger.info(f">>> Processed feed {feed.label} ({run.remaining} left)")

    async def _record_failure(self, feed: FeedSource, error: Exception) -> None:
        try:
            await self.db.execute('record_feed_log', feed_id=feed.id, success=False, message=str(error))
        except Exception as log_error:
            logger.debug(f"Could not record failure for {feed.url}: {log_error}")

    @trace_span(
        "ingest.feed",
        tracer_name="ingest",
        attr_from_args=lambda self, feed, client, resolver: {
            "feed.id": feed.id,
            "feed.url": feed.url,
        },
    )
    async def ingest_feed(self, feed: FeedSource, client, resolver: IconResolver) -> int:
        """Fetch one feed and persist its entries. Returns the number of entries stored."""
        parsed = await self.fetcher.fetch(feed.url, client)
        await self._update_metadata(feed, parsed)

        notes = []
        if parsed.bozo_exception:
            notes.append(f"feed parsing warning: {parsed.bozo_exception}")
        if not feed.icon:
            try:
                icon = await resolver.resolve(parsed, fallback_link=feed.link)
            except Exception as e:
                # Articles are still worth storing without an icon
                logger.warning(f"Error getting icon for {feed.url}: {e}")
                notes.append(f"error getting icon: {e}")
                icon = None
            await self._store_icon(feed, icon)

        for entry in parsed.entries:
            # BeautifulSoup work stays off the event loop
            content = await self.fetcher.run_in_executor(extract_content, entry)
            await self.db.execute(
                'upsert_article',
                article_id=resolve_article_id(entry),
                feed_id=feed.id,
                content=content,
                title=entry.title or DEFAULT_TITLE,
                link=entry.link,
                published=self.fetcher.parse_date(entry),
            )

        await self.db.execute('record_feed_log', feed_id=feed.id, success=True, message="\n".join(notes))
        return len(parsed.entries)

    async def _update_metadata(self, feed: FeedSource, parsed: ParsedFeed) -> None:
        if parsed.title and parsed.title != feed.title:
            await self.db.execute('update_feed_title', feed_id=feed.id, title=parsed.title)
            feed.title = parsed.title
        if parsed.link and parsed.link != feed.link:
            await self.db.execute('update_feed_link', feed_id=feed.id, link=parsed.link)
            feed.link = parsed.link

    async def _store_icon(self, feed: FeedSource, icon: Optional[str]) -> None:
        if not icon:
            logger.debug(f"No icon found for {feed.url}")
            return
        if await self.db.execute('update_feed_icon', feed_id=feed.id, icon=icon):
            feed.icon = icon
            logger.info(f">>> Updated icon for {feed.url}")
