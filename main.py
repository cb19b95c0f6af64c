#!/usr/bin/env python3
"""
Feed ingestion entry point.

Modes:
  run        Run a single ingestion cycle and exit
  scheduled  Run a cycle now and then every FETCH_INTERVAL_SECONDS, forever
  status     Show per-feed article counts and the latest refresh result
  feeds      List known feeds with their icon and enabled state
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import config, get_logger
from fetcher import FeedFetcher
from ingest import IngestionOrchestrator
from models import DatabaseQueue
from scheduler import create_scheduler
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")
init_telemetry("feed-ingest")


class IngestService:
    """Owns the database queue and fetcher for the lifetime of one command."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = FeedFetcher()
        self.orchestrator = IngestionOrchestrator(self.db, self.fetcher)

    async def __aenter__(self) -> "IngestService":
        await self.db.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.db.stop()
        self.fetcher.close()


@trace_span("main.run_once", tracer_name="main")
async def run_once(db_path: Optional[str] = None):
    async with IngestService(db_path) as service:
        run = await service.orchestrator.run_ingestion_cycle()
    return run


async def run_scheduled(cycles: Optional[int] = None, db_path: Optional[str] = None) -> None:
    scheduler = create_scheduler()
    async with IngestService(db_path) as service:
        await scheduler.run_forever(service.orchestrator, max_cycles=cycles)


async def collect_status(db_path: Optional[str] = None) -> Dict[str, Any]:
    """Gather feed and article statistics from the database."""
    status: Dict[str, Any] = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'config': config.get_config_summary(),
        'feeds': [],
    }
    async with IngestService(db_path) as service:
        await service.orchestrator.sync_feed_sources()
        for feed in await service.db.execute('list_feeds'):
            logs = await service.db.execute('get_feed_logs', feed_id=feed.id, limit=1)
            status['feeds'].append({
                'id': feed.id,
                'slug': feed.slug,
                'url': feed.url,
                'title': feed.label,
                'icon': feed.icon,
                'disabled': feed.disabled,
                'articles': await service.db.execute('count_articles', feed_id=feed.id),
                'last_log': logs[0] if logs else None,
            })
        status['total_articles'] = await service.db.execute('count_articles')
    return status


def _format_ms(value: Optional[int]) -> str:
    if not value:
        return "never"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


def print_status(status: Dict[str, Any]) -> None:
    print(f"\nFeed ingestion status ({status['timestamp']})")
    print(f"Database: {status['config']['database_path']}")
    print(f"Articles: {status['total_articles']}\n")
    for feed in status['feeds']:
        state = "disabled" if feed['disabled'] else "enabled"
        last = feed['last_log']
        if last:
            outcome = "ok" if last['success'] else f"failed ({last['message']})"
            last_str = f"{_format_ms(last['time'])} {outcome}"
        else:
            last_str = "never refreshed"
        print(f"  [{state}] {feed['title']}: {feed['articles']} articles, last refresh {last_str}")


def print_feeds(status: Dict[str, Any]) -> None:
    for feed in status['feeds']:
        flag = "-" if feed['disabled'] else "+"
        print(f"{flag} {feed['slug']:<24} {feed['url']}  icon={feed['icon'] or 'none'}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed ingestion service')
    parser.add_argument('mode', choices=['run', 'scheduled', 'status', 'feeds'], help='Operation mode')
    parser.add_argument('--cycles', type=int, default=None,
                        help='Stop scheduled mode after this many cycles')
    parser.add_argument('--database', type=str, default=None,
                        help='SQLite database path (overrides DATABASE_PATH)')

    args = parser.parse_args()

    try:
        if args.mode == 'run':
            run = asyncio.run(run_once(args.database))
            logger.info(f"Single run finished: {run}")

        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled(args.cycles, args.database))

        elif args.mode == 'status':
            print_status(asyncio.run(collect_status(args.database)))

        elif args.mode == 'feeds':
            print_feeds(asyncio.run(collect_status(args.database)))

    except KeyboardInterrupt:
        logger.info("Shutting down")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
