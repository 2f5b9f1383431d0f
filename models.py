#!/usr/bin/env python3
"""
Database models and operations for feed ingestion.

All SQLite access goes through a single worker coroutine fed by a queue, so
callers on the event loop never share a connection. Operations are plain
methods invoked by name via ``await db.execute('operation', **params)``.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("models")

SUBSCRIPTION_FIELDS = (
    "hub_url", "topic_url", "callback_url", "secret", "state", "lease_seconds",
    "requested_at", "verified_at", "expires_at", "last_error",
)

FEED_METADATA_FIELDS = (
    "title", "description", "site_url", "icon_url", "hub_url", "self_url",
    "ttl_minutes", "sy_update_period", "sy_update_frequency",
)

# Keeps IN (...) lists under SQLite's host parameter limit
GUID_CHUNK_SIZE = 500


def initialize_database(conn) -> None:
    """Initialize the database with the schema from the SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
            _run_migrations(conn)

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring databases created by older releases up to date."""
    cursor = conn.cursor()

    try:
        cursor.execute("PRAGMA table_info(feeds)")
        columns = [column[1] for column in cursor.fetchall()]

        if 'readability' not in columns:
            logger.info("Adding readability column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN readability INTEGER NOT NULL DEFAULT 0")
            conn.commit()

        if 'subscriber_count' not in columns:
            logger.info("Adding subscriber_count column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN subscriber_count INTEGER NOT NULL DEFAULT 1")
            conn.commit()

        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='websub_subscriptions'")
        if cursor.fetchone() is None:
            logger.info("Creating websub_subscriptions table")
            cursor.executescript(_read_schema_file())
            conn.commit()

    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
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
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class DatabaseQueue:
    """A queue for database operations so only one coroutine touches SQLite."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

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

        # Release any callers still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")

        initialize_database(self.conn)

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if hasattr(self, operation_name) and not operation_name.startswith('_'):
                        method = getattr(self, operation_name)
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                    else:
                        self.results[operation_id] = {"error": ValueError(f"Unknown operation: {operation_name}")}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

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
        """Execute a database operation and return its result.

        Exceptions raised by the operation inside the worker are re-raised here.
        """
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database worker stopped before completing {operation_name}")
            if "error" in result:
                raise result["error"]

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed Management Operations
    def register_feed(self, url: str, slug: Optional[str] = None, readability: bool = False) -> Optional[int]:
        """Register a feed (idempotent by URL) and return its id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO feeds (slug, url, readability, created_at) VALUES (?, ?, ?, ?)",
                (slug, url, 1 if readability else 0, int(time()))
            )
            self.conn.commit()
            cursor.execute("SELECT id FROM feeds WHERE url = ?", (url,))
            row = cursor.fetchone()
            return row['id'] if row else None
        except Error as e:
            logger.error(f"Error registering feed {url}: {e}")
            return None

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.error(f"Error getting feed {feed_id}: {e}")
            return None

    def get_feed_id(self, slug: str) -> Optional[int]:
        """Get the ID of a feed by its slug."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT id FROM feeds WHERE slug = ?", (slug,))
            row = cursor.fetchone()
            return row['id'] if row else None
        except Error as e:
            logger.error(f"Error getting feed ID for {slug}: {e}")
            return None

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds with their schedule state and entry counts."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT f.id, f.slug, f.url, f.title, f.next_fetch_at, f.last_fetched,
                       f.consecutive_failures, f.schedule_reason, f.last_error,
                       (SELECT COUNT(*) FROM entries e WHERE e.feed_id = f.id) AS entry_count,
                       COALESCE(s.state, 'none') AS websub_state
                FROM feeds f
                LEFT JOIN websub_subscriptions s ON s.feed_id = f.id
                ORDER BY f.id
            """)
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing feeds: {e}")
            return []

    def list_due_feeds(self, now: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Feeds whose next_fetch_at has passed, oldest first."""
        try:
            cursor = self.conn.cursor()
            query = "SELECT * FROM feeds WHERE next_fetch_at <= ? ORDER BY next_fetch_at"
            params: List[Any] = [now]
            if limit:
                query += " LIMIT ?"
                params.append(limit)
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing due feeds: {e}")
            return []

    def record_fetch_success(
        self,
        feed_id: int,
        fetched_at: int,
        next_fetch_at: int,
        schedule_reason: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        cache_control: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Reset the failure count and store validators and schedule.

        Validators are only overwritten when the response supplied new ones.
        Metadata keys outside FEED_METADATA_FIELDS are ignored.
        """
        try:
            assignments = [
                "consecutive_failures = 0",
                "last_error = NULL",
                "last_fetched = ?",
                "next_fetch_at = ?",
                "schedule_reason = ?",
                "etag = COALESCE(?, etag)",
                "last_modified = COALESCE(?, last_modified)",
                "cache_control = ?",
            ]
            params: List[Any] = [fetched_at, next_fetch_at, schedule_reason, etag, last_modified, cache_control]
            for key in FEED_METADATA_FIELDS:
                if metadata and key in metadata:
                    assignments.append(f"{key} = ?")
                    params.append(metadata[key])
            params.append(feed_id)

            cursor = self.conn.cursor()
            cursor.execute(f"UPDATE feeds SET {', '.join(assignments)} WHERE id = ?", params)
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error recording fetch success for feed ID {feed_id}: {e}")
            return False

    def record_fetch_failure(
        self,
        feed_id: int,
        fetched_at: int,
        next_fetch_at: int,
        schedule_reason: str,
        consecutive_failures: int,
        error: Optional[str] = None,
    ) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """UPDATE feeds SET consecutive_failures = ?, last_error = ?, last_fetched = ?,
                   next_fetch_at = ?, schedule_reason = ? WHERE id = ?""",
                (consecutive_failures, error, fetched_at, next_fetch_at, schedule_reason, feed_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error recording fetch failure for feed ID {feed_id}: {e}")
            return False

    def update_feed_url(self, feed_id: int, url: str) -> bool:
        """Persist a new canonical URL; fails if another feed already owns it."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE feeds SET url = ? WHERE id = ?", (url, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            self.conn.rollback()
            logger.warning(f"Could not update URL for feed ID {feed_id} to {url}: {e}")
            return False

    def schedule_feed(self, feed_id: int, next_fetch_at: int) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE feeds SET next_fetch_at = ? WHERE id = ?", (next_fetch_at, feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error scheduling feed ID {feed_id}: {e}")
            return False

    # Entry Operations
    def get_entry_hashes(self, feed_id: int, guids: List[str]) -> Dict[str, str]:
        """Map each already-stored GUID of ``feed_id`` to its content hash."""
        if not guids:
            return {}
        cursor = self.conn.cursor()
        hashes: Dict[str, str] = {}
        for chunk in _chunks(list(guids), GUID_CHUNK_SIZE):
            placeholders = ','.join(['?' for _ in chunk])
            cursor.execute(
                f"SELECT guid, content_hash FROM entries WHERE feed_id = ? AND guid IN ({placeholders})",
                [feed_id] + chunk
            )
            hashes.update({row['guid']: row['content_hash'] for row in cursor.fetchall()})
        return hashes

    def upsert_entries(self, feed_id: int, entries: List[Dict[str, Any]], fetched_at: str) -> int:
        """Insert or update entries in a single transaction.

        Either every row is written or none is; errors roll back and propagate.
        """
        if not entries:
            return 0
        now = int(time())
        try:
            with self.conn:
                self.conn.executemany(
                    """
                    INSERT INTO entries (feed_id, guid, url, title, author, content_original,
                                         content_cleaned, summary, published_at, fetched_at,
                                         content_hash, updated_at)
                    VALUES (:feed_id, :guid, :url, :title, :author, :content_original,
                            :content_cleaned, :summary, :published_at, :fetched_at,
                            :content_hash, :updated_at)
                    ON CONFLICT(feed_id, guid) DO UPDATE SET
                        url = excluded.url,
                        title = excluded.title,
                        author = excluded.author,
                        content_original = excluded.content_original,
                        content_cleaned = excluded.content_cleaned,
                        summary = excluded.summary,
                        published_at = excluded.published_at,
                        content_hash = excluded.content_hash,
                        updated_at = excluded.updated_at
                    """,
                    [dict(entry, feed_id=feed_id, fetched_at=fetched_at, updated_at=now) for entry in entries]
                )
            return len(entries)
        except Error as e:
            logger.error(f"Error upserting {len(entries)} entries for feed ID {feed_id}: {e}")
            raise

    def count_entries(self, feed_id: int) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM entries WHERE feed_id = ?", (feed_id,))
            return cursor.fetchone()[0]
        except Error as e:
            logger.error(f"Error counting entries for feed ID {feed_id}: {e}")
            return 0

    def get_entry(self, feed_id: int, guid: str) -> Optional[Dict[str, Any]]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM entries WHERE feed_id = ? AND guid = ?", (feed_id, guid))
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.error(f"Error getting entry {guid} for feed ID {feed_id}: {e}")
            return None

    # WebSub Subscription Operations
    def get_subscription(self, feed_id: int) -> Optional[Dict[str, Any]]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM websub_subscriptions WHERE feed_id = ?", (feed_id,))
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.error(f"Error getting subscription for feed ID {feed_id}: {e}")
            return None

    def save_subscription(self, feed_id: int, **fields) -> bool:
        """Create or update the subscription row for ``feed_id``.

        Only the given fields are written; unknown keys raise ValueError.
        """
        unknown = set(fields) - set(SUBSCRIPTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
        now = int(time())
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT 1 FROM websub_subscriptions WHERE feed_id = ?", (feed_id,))
            if cursor.fetchone() is None:
                row = {key: fields.get(key) for key in SUBSCRIPTION_FIELDS}
                row['state'] = row['state'] or 'none'
                columns = ', '.join(('feed_id', 'updated_at') + SUBSCRIPTION_FIELDS)
                placeholders = ', '.join(['?'] * (len(SUBSCRIPTION_FIELDS) + 2))
                cursor.execute(
                    f"INSERT INTO websub_subscriptions ({columns}) VALUES ({placeholders})",
                    [feed_id, now] + [row[key] for key in SUBSCRIPTION_FIELDS]
                )
            elif fields:
                assignments = ', '.join(f"{key} = ?" for key in fields)
                cursor.execute(
                    f"UPDATE websub_subscriptions SET {assignments}, updated_at = ? WHERE feed_id = ?",
                    list(fields.values()) + [now, feed_id]
                )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error saving subscription for feed ID {feed_id}: {e}")
            return False

    def list_expiring_subscriptions(self, before: int, states: Iterable[str] = ('active',)) -> List[Dict[str, Any]]:
        """Subscriptions in ``states`` whose lease ends before ``before``."""
        states = list(states)
        if not states:
            return []
        try:
            cursor = self.conn.cursor()
            placeholders = ','.join(['?' for _ in states])
            cursor.execute(
                f"""SELECT * FROM websub_subscriptions
                    WHERE state IN ({placeholders}) AND expires_at IS NOT NULL AND expires_at < ?
                    ORDER BY expires_at""",
                states + [before]
            )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing expiring subscriptions: {e}")
            return []

    def list_stale_requested_subscriptions(self, older_than: int) -> List[Dict[str, Any]]:
        """Subscriptions still awaiting hub verification since before ``older_than``."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """SELECT * FROM websub_subscriptions
                   WHERE state = 'requested' AND (requested_at IS NULL OR requested_at < ?)""",
                (older_than,)
            )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing stale subscription requests: {e}")
            return []
