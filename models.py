#!/usr/bin/env python3
"""
Database models and operations for the feed ingester.

This module contains the record types passed between the fetcher and the
orchestrator, and the single-writer database queue used for persistence,
providing a clean separation between data access and ingestion logic.
"""

from dataclasses import dataclass, field
from os import path, access, R_OK
from time import struct_time, time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import PersistenceError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")


@dataclass
class FeedSource:
    """A subscribed feed as stored in the feeds table."""
    id: int
    slug: str
    url: str
    link: Optional[str] = None
    icon: Optional[str] = None
    title: Optional[str] = None
    disabled: bool = False

    @classmethod
    def from_row(cls, row: Row) -> "FeedSource":
        return cls(
            id=row['id'],
            slug=row['slug'],
            url=row['url'],
            link=row['link'],
            icon=row['icon'],
            title=row['title'],
            disabled=bool(row['disabled']),
        )

    @property
    def label(self) -> str:
        return self.title or self.slug


@dataclass
class ParsedEntry:
    """One syndication item, normalized from the parser's output."""
    guid: Optional[str] = None
    id: Optional[str] = None
    link: Optional[str] = None
    title: Optional[str] = None
    published: Optional[str] = None
    published_parsed: Optional[struct_time] = None
    encoded_content: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class ParsedFeed:
    """Feed-level metadata plus the entries of one downloaded document."""
    title: Optional[str] = None
    link: Optional[str] = None
    image_url: Optional[str] = None
    version: Optional[str] = None
    bozo_exception: Optional[str] = None
    entries: List[ParsedEntry] = field(default_factory=list)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time() * 1000)


def initialize_database(conn) -> None:
    """Initialize the database with the schema from the SQL file.

    The schema only uses CREATE ... IF NOT EXISTS, so running it against an
    existing database is harmless.
    """
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations.

    Every operation runs on one worker coroutine owning the sqlite connection,
    so concurrent feed tasks never write at the same time. Operations are the
    public methods below, invoked by name through execute().
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self.init_error: Optional[str] = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on a result
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "database worker stopped"})
            event.set()

        logger.info("Database worker stopped")

    def _connect(self) -> None:
        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        try:
            self._connect()
        except (Error, OSError, ValueError) as e:
            logger.error(f"Database initialization failed for {self.db_path}: {e}")
            self.init_error = str(e)

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if self.init_error:
                        self.results[operation_id] = {"error": f"database unavailable: {self.init_error}"}
                    elif operation_name.startswith('_') or not hasattr(self, operation_name):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        method = getattr(self, operation_name)
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation.

        Raises:
            PersistenceError: if the operation failed or the database is unavailable.
        """
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id)
            if "error" in result:
                raise PersistenceError(operation_name, result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed operations
    def register_feed(self, slug: str, url: str, disabled: bool = False) -> bool:
        """Insert a feed if its slug is unknown, keeping url and disabled flag in sync.

        Returns True when a new row was created.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT OR IGNORE INTO feeds (slug, url, disabled, created) VALUES (?, ?, ?, ?)",
                (slug, url, int(disabled), now_ms())
            )
            created = cursor.rowcount > 0
            if not created:
                cursor.execute(
                    "UPDATE feeds SET url = ?, disabled = ? WHERE slug = ?",
                    (url, int(disabled), slug)
                )
            self.conn.commit()
            return created
        finally:
            cursor.close()

    def list_feeds(self) -> List[FeedSource]:
        """List all feeds, disabled ones included."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id, slug, url, link, icon, title, disabled FROM feeds ORDER BY id")
            return [FeedSource.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def get_feed(self, feed_id: int) -> Optional[FeedSource]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT id, slug, url, link, icon, title, disabled FROM feeds WHERE id = ?",
                (feed_id,)
            )
            row = cursor.fetchone()
            return FeedSource.from_row(row) if row else None
        finally:
            cursor.close()

    def get_feed_id(self, slug: str) -> Optional[int]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id FROM feeds WHERE slug = ?", (slug,))
            row = cursor.fetchone()
            return row['id'] if row else None
        finally:
            cursor.close()

    def update_feed_icon(self, feed_id: int, icon: str) -> bool:
        """Store an icon URL, only if the feed has none yet.

        Returns True if the icon was written.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET icon = ? WHERE id = ? AND (icon IS NULL OR icon = '')",
                (icon, feed_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def update_feed_title(self, feed_id: int, title: str) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("UPDATE feeds SET title = ? WHERE id = ?", (title, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def update_feed_link(self, feed_id: int, link: str) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("UPDATE feeds SET link = ? WHERE id = ?", (link, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    # Article operations
    def upsert_article(
        self,
        article_id: str,
        feed_id: int,
        content: Optional[str],
        title: str,
        link: Optional[str],
        published: int,
    ) -> None:
        """Insert an article, or update it in place when (article_id, feed_id) exists."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO articles (feed_id, article_id, title, link, content, published, updated)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(article_id, feed_id) DO UPDATE SET
                    content = excluded.content,
                    title = excluded.title,
                    link = excluded.link,
                    published = excluded.published,
                    updated = excluded.updated
                """,
                (feed_id, article_id, title, link, content, published, now_ms())
            )
            self.conn.commit()
        finally:
            cursor.close()

    def count_articles(self, feed_id: Optional[int] = None) -> int:
        cursor = self.conn.cursor()
        try:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM articles")
            else:
                cursor.execute("SELECT COUNT(*) FROM articles WHERE feed_id = ?", (feed_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    def get_articles_for_feed(self, feed_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Return the newest stored articles of a feed as dicts."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT id, feed_id, article_id, title, link, content, published, updated
                FROM articles
                WHERE feed_id = ?
                ORDER BY published DESC, id DESC
                LIMIT ?
                """,
                (feed_id, limit)
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    # Refresh log operations
    def record_feed_log(self, feed_id: int, success: bool, message: Optional[str] = None) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO feed_logs (feed_id, time, success, message) VALUES (?, ?, ?, ?)",
                (feed_id, now_ms(), int(success), message or None)
            )
            self.conn.commit()
        finally:
            cursor.close()

    def get_feed_logs(self, feed_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT feed_id, time, success, message FROM feed_logs WHERE feed_id = ? ORDER BY id DESC LIMIT ?",
                (feed_id, limit)
            )
            return [
                {
                    'feed_id': row['feed_id'],
                    'time': row['time'],
                    'success': bool(row['success']),
                    'message': row['message'],
                }
                for row in cursor.fetchall()
            ]
        finally:
            cursor.close()
