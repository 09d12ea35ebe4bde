#!/usr/bin/env python3
"""
Database models and operations for the feed campaign engine.

All SQLite access goes through ``DatabaseQueue``: callers submit named
operations with ``await db.execute('operation_name', **params)`` and a single
worker coroutine runs them one at a time against one connection. Operation
failures surface to the caller as ``StoreError``.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from contextlib import closing
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import config, get_logger
from errors import StoreError
from telemetry import trace_span

logger = get_logger("models")

SECONDS_PER_DAY = 24 * 60 * 60

# Campaign statuses that are never evaluated, fetched for, or re-embargoed
INACTIVE_STATUSES = ('draft', 'sent', 'prepared', 'suspended')

# Columns an item selection may window and order by
ITEM_DATE_FIELDS = ('published', 'added')

STANDARD_PROPERTIES = (
    'title', 'url', 'language', 'author', 'content',
    'enclosure_url', 'enclosure_type', 'rtl',
)

CAMPAIGN_FIELDS = (
    'subject', 'message', 'status', 'embargo', 'repeat_interval', 'repeat_until',
    'rss_feed', 'rss_order', 'rss_template', 'item_select_field',
)


def initialize_database(conn) -> None:
    """Create any missing tables and indexes from the schema file."""
    try:
        with closing(conn.cursor()) as cursor:
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
            if cursor.fetchone() is None:
                logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise


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


def _placeholders(values: Iterable[Any]) -> str:
    return ','.join('?' for _ in values)


class DatabaseQueue:
    """A queue for database operations to keep SQLite access serialized."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
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
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.debug("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except CancelledError:
                break

            try:
                method = getattr(self, operation_name, None)
                if operation_name.startswith('_') or not callable(method):
                    self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                else:
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

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            StoreError: if the worker is not running or the operation failed.
        """
        if not self.running:
            raise StoreError("Database worker is not running", operation=operation_name)
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, {"error": "Database worker stopped"})
            if "error" in result:
                raise StoreError(result["error"], operation=operation_name)
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed operations
    def add_feed(self, url: str) -> int:
        """Register a feed URL if it is not known yet and return its id."""
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("INSERT OR IGNORE INTO feeds (url) VALUES (?)", (url,))
            cursor.execute("SELECT id FROM feeds WHERE url = ?", (url,))
            feed_id = cursor.fetchone()['id']
        self.conn.commit()
        return feed_id

    def get_feed_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("SELECT * FROM feeds WHERE url = ?", (url,))
            row = cursor.fetchone()
        return dict(row) if row else None

    def feed_exists(self, url: str) -> bool:
        return self.get_feed_by_url(url) is not None

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List every feed with its item count and campaign usage."""
        inactive = _placeholders(INACTIVE_STATUSES)
        query = f"""
            SELECT fe.id, fe.url, fe.etag, fe.last_modified, fe.title, fe.last_fetched,
                (SELECT COUNT(*) FROM items it WHERE it.feed_id = fe.id) AS item_count,
                (SELECT COUNT(*) FROM campaigns c
                    WHERE c.rss_feed = fe.url AND c.status NOT IN ({inactive})) AS active_campaigns,
                (SELECT COUNT(*) FROM campaigns c
                    WHERE c.rss_feed = fe.url AND c.status = 'sent') AS sent_campaigns
            FROM feeds fe
            ORDER BY fe.id
        """
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(query, INACTIVE_STATUSES)
            rows = cursor.fetchall()
        feeds = []
        for row in rows:
            feed = dict(row)
            feed['active'] = feed['active_campaigns'] > 0
            feeds.append(feed)
        return feeds

    def active_feeds(self) -> List[Dict[str, Any]]:
        """Feeds referenced by at least one campaign that can still be sent."""
        query = f"""
            SELECT DISTINCT fe.id, fe.url, fe.etag, fe.last_modified
            FROM feeds fe
            JOIN campaigns c ON c.rss_feed = fe.url
            WHERE c.status NOT IN ({_placeholders(INACTIVE_STATUSES)})
            ORDER BY fe.id
        """
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(query, INACTIVE_STATUSES)
            return [dict(row) for row in cursor.fetchall()]

    def update_feed_headers(self, feed_id: int, etag: str, last_modified: str, title: Optional[str] = None) -> bool:
        """Store the cache validators from a successful fetch."""
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                UPDATE feeds
                SET etag = ?, last_modified = ?, title = COALESCE(?, title), last_fetched = ?
                WHERE id = ?
                """,
                (etag or '', last_modified or '', title, int(time()), feed_id),
            )
            updated = cursor.rowcount > 0
        self.conn.commit()
        return updated

    def reset_all_feeds(self) -> int:
        """Delete every item and clear the cache validators of every feed."""
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("DELETE FROM item_data")
            cursor.execute("DELETE FROM items")
            cursor.execute("UPDATE feeds SET etag = '', last_modified = ''")
            count = cursor.rowcount
        self.conn.commit()
        logger.info(f"Reset {count} feeds")
        return count

    def delete_unused_feeds(self) -> int:
        """Delete feeds, with their items, whose URL no campaign references."""
        unused = "SELECT id FROM feeds WHERE url NOT IN (SELECT rss_feed FROM campaigns WHERE rss_feed != '')"
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                f"DELETE FROM item_data WHERE item_id IN (SELECT id FROM items WHERE feed_id IN ({unused}))"
            )
            cursor.execute(f"DELETE FROM items WHERE feed_id IN ({unused})")
            cursor.execute(f"DELETE FROM feeds WHERE id IN ({unused})")
            count = cursor.rowcount
        self.conn.commit()
        return count

    # Item operations
    def add_item(self, feed_id: int, uid: str, published: int, added: Optional[int] = None) -> Optional[int]:
        """Insert an item unless (feed_id, uid) already exists.

        Returns:
            The new item id, or None when the item was already stored.
        """
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "INSERT OR IGNORE INTO items (uid, feed_id, published, added) VALUES (?, ?, ?, ?)",
                (uid, feed_id, int(published), int(added if added is not None else time())),
            )
            item_id = cursor.lastrowid if cursor.rowcount > 0 else None
        self.conn.commit()
        return item_id

    def add_item_data(self, item_id: int, properties: Dict[str, Any]) -> int:
        """Write the whole property bag of an item in one batch."""
        if not properties:
            return 0
        rows = [
            (item_id, str(name), '' if value is None else str(value))
            for name, value in properties.items()
        ]
        with closing(self.conn.cursor()) as cursor:
            cursor.executemany(
                "INSERT OR REPLACE INTO item_data (item_id, property, value) VALUES (?, ?, ?)",
                rows,
            )
        self.conn.commit()
        return len(rows)

    def count_items(self, feed_id: Optional[int] = None) -> int:
        with closing(self.conn.cursor()) as cursor:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM items")
            else:
                cursor.execute("SELECT COUNT(*) FROM items WHERE feed_id = ?", (feed_id,))
            return int(cursor.fetchone()[0])

    def get_item_uids(self, feed_id: int) -> List[str]:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("SELECT uid FROM items WHERE feed_id = ? ORDER BY id", (feed_id,))
            return [row[0] for row in cursor.fetchall()]

    def get_item_data(self, item_ids: List[int]) -> Dict[int, Dict[str, str]]:
        """Return {item_id: {property: value}} for the given items."""
        if not item_ids:
            return {}
        data: Dict[int, Dict[str, str]] = {item_id: {} for item_id in item_ids}
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                f"SELECT item_id, property, value FROM item_data WHERE item_id IN ({_placeholders(item_ids)})",
                list(item_ids),
            )
            for row in cursor.fetchall():
                data[row['item_id']][row['property']] = row['value']
        return data

    def delete_items(self, days: int, now: Optional[int] = None) -> int:
        """Delete items (and their properties) published more than `days` days ago.

        Returns:
            Number of items deleted.
        """
        if days < 0:
            raise ValueError(f"days must not be negative, got {days}")
        cutoff = int(now if now is not None else time()) - int(days) * SECONDS_PER_DAY
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "DELETE FROM item_data WHERE item_id IN (SELECT id FROM items WHERE published < ?)",
                (cutoff,),
            )
            cursor.execute("DELETE FROM items WHERE published < ?", (cutoff,))
            deleted = cursor.rowcount
        self.conn.commit()
        logger.info(f"Deleted {deleted} items published more than {days} days ago")
        return deleted

    def query_feed_items(
        self,
        feed_url: str,
        limit: int,
        window_start: Optional[int] = None,
        window_end: Optional[int] = None,
        date_field: str = 'published',
    ) -> List[Dict[str, Any]]:
        """Select the newest `limit` items of a feed, returned oldest first.

        Only items with at least one stored property qualify. When a window is
        given, `window_start <= date_field < window_end` must hold.
        """
        if date_field not in ITEM_DATE_FIELDS:
            raise ValueError(f"Unsupported item date field: {date_field}")
        if limit <= 0:
            return []
        params: List[Any] = [feed_url]
        window_clause = ""
        if window_start is not None:
            window_clause += f" AND it.{date_field} >= ?"
            params.append(int(window_start))
        if window_end is not None:
            window_clause += f" AND it.{date_field} < ?"
            params.append(int(window_end))
        params.append(int(limit))
        query = f"""
            SELECT it.id, it.published, it.added
            FROM items it
            JOIN feeds fe ON fe.id = it.feed_id
            WHERE fe.url = ?{window_clause}
            AND EXISTS (SELECT 1 FROM item_data d WHERE d.item_id = it.id)
            ORDER BY it.{date_field} DESC, it.id DESC
            LIMIT ?
        """
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(query, params)
            rows = [dict(row) for row in cursor.fetchall()]

        properties = self.get_item_data([row['id'] for row in rows])
        items = []
        for row in reversed(rows):
            item = {name: '' for name in STANDARD_PROPERTIES}
            item.update(properties.get(row['id'], {}))
            item.update(row)
            items.append(item)
        return items

    # Campaign operations
    def add_campaign(self, name: str, **fields) -> Optional[int]:
        """Insert a campaign unless one with the same name exists.

        Returns:
            The new campaign id, or None when the name was already taken.
        """
        unknown = set(fields) - set(CAMPAIGN_FIELDS)
        if unknown:
            raise ValueError(f"Unknown campaign fields: {', '.join(sorted(unknown))}")
        if 'embargo' not in fields:
            fields['embargo'] = int(time())
        columns = ['name'] + list(fields)
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                f"INSERT OR IGNORE INTO campaigns ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
                [name] + list(fields.values()),
            )
            campaign_id = cursor.lastrowid if cursor.rowcount > 0 else None
        self.conn.commit()
        return campaign_id

    def get_campaign(self, campaign_id: int) -> Optional[Dict[str, Any]]:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,))
            row = cursor.fetchone()
        return dict(row) if row else None

    def get_campaign_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("SELECT * FROM campaigns WHERE name = ?", (name,))
            row = cursor.fetchone()
        return dict(row) if row else None

    def ready_campaigns(self, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """Campaigns with a feed that are due and not in an inactive status."""
        current = int(now if now is not None else time())
        query = f"""
            SELECT *
            FROM campaigns
            WHERE rss_feed != ''
            AND status NOT IN ({_placeholders(INACTIVE_STATUSES)})
            AND embargo <= ?
            ORDER BY id
        """
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(query, list(INACTIVE_STATUSES) + [current])
            return [dict(row) for row in cursor.fetchall()]

    def re_embargo_campaign(self, campaign_id: int, now: Optional[int] = None) -> int:
        """Move the embargo forward by whole repeat intervals until it passes `now`.

        The update only applies while `now` is before the campaign's
        repeat_until, so a finished campaign is never advanced.

        Returns:
            Number of rows updated (0 or 1).
        """
        current = int(now if now is not None else time())
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                UPDATE campaigns
                SET embargo = embargo
                    + ((? - embargo) / (repeat_interval * 60) + 1) * (repeat_interval * 60)
                WHERE id = ? AND ? < repeat_until AND repeat_interval > 0
                """,
                (current, campaign_id, current),
            )
            count = cursor.rowcount
        self.conn.commit()
        return count

    def set_campaign_sent(self, campaign_id: int) -> int:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "UPDATE campaigns SET status = 'sent' WHERE id = ? AND status != 'sent'",
                (campaign_id,),
            )
            count = cursor.rowcount
        self.conn.commit()
        return count

    def set_campaign_content(self, campaign_id: int, message: Optional[str] = None, subject: Optional[str] = None) -> int:
        """Replace the stored message body and/or subject of a campaign."""
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "UPDATE campaigns SET message = COALESCE(?, message), subject = COALESCE(?, subject) WHERE id = ?",
                (message, subject, campaign_id),
            )
            count = cursor.rowcount
        self.conn.commit()
        return count

    # Audit log
    def log_event(self, message: str, now: Optional[int] = None) -> int:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "INSERT INTO event_log (entered, message) VALUES (?, ?)",
                (int(now if now is not None else time()), message),
            )
            event_id = cursor.lastrowid
        self.conn.commit()
        return event_id

    def recent_events(self, limit: int = 20) -> List[Dict[str, Any]]:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("SELECT id, entered, message FROM event_log ORDER BY id DESC LIMIT ?", (int(limit),))
            return [dict(row) for row in cursor.fetchall()]
