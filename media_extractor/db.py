"""Database operations for the file processing queue and source webhooks."""
import psycopg2
from psycopg2 import pool, sql
from psycopg2.extras import RealDictCursor
from typing import List, Optional, Dict, Any, Iterable
from contextlib import contextmanager
from dataclasses import fields

from media_extractor import settings
from media_extractor.errors import StoreUnavailable
from media_extractor.logging_conf import logger
from media_extractor.queue.models import QueueItem, QUEUED, PROCESSING, DONE, EMAIL, MESSAGING

QUEUE_TABLE = "file_processing_queue"
WEBHOOK_TABLES = {
    MESSAGING: "messaging_webhooks",
    EMAIL: "email_webhooks",
}

_ITEM_COLUMNS = frozenset(f.name for f in fields(QueueItem)) - {"id"}

SCHEMA = """
CREATE TABLE IF NOT EXISTS file_processing_queue (
    id                  TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    webhook_id          TEXT NOT NULL,
    webhook_source      TEXT NOT NULL DEFAULT 'messaging',
    attachment_index    INTEGER,
    source_phone        TEXT NOT NULL DEFAULT '',
    media_url           TEXT,
    media_file_name     TEXT NOT NULL DEFAULT '',
    media_mime_type     TEXT NOT NULL DEFAULT '',
    media_type          TEXT NOT NULL DEFAULT 'image',
    media_type_detected BOOLEAN NOT NULL DEFAULT FALSE,
    thumbnail_base64    TEXT,
    status              TEXT NOT NULL DEFAULT 'queued',
    attempts            INTEGER NOT NULL DEFAULT 0,
    max_attempts        INTEGER NOT NULL DEFAULT 3,
    last_attempt_at     TIMESTAMPTZ,
    next_retry_at       TIMESTAMPTZ,
    extracted_text      TEXT,
    processing_method   TEXT,
    error               TEXT,
    gcs_url             TEXT,
    gcs_path            TEXT,
    processed_at        TIMESTAMPTZ,
    received_at         TIMESTAMPTZ,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS file_processing_queue_source_key
    ON file_processing_queue (webhook_source, webhook_id, (COALESCE(attachment_index, -1)));
CREATE INDEX IF NOT EXISTS file_processing_queue_status_idx
    ON file_processing_queue (status, next_retry_at);
CREATE TABLE IF NOT EXISTS messaging_webhooks (
    id          TEXT PRIMARY KEY,
    payload     JSONB NOT NULL,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS email_webhooks (
    id          TEXT PRIMARY KEY,
    payload     JSONB NOT NULL,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class Database:
    """Database connection and operations for queue items and webhooks.

    Worker threads share one pool; every method checks a connection out for
    the duration of a single transaction.
    """

    def __init__(self, dsn: Optional[str] = None, max_connections: Optional[int] = None):
        self.dsn = dsn or settings.DATABASE_URL
        self.max_connections = max_connections or settings.WORKER_CONCURRENCY * settings.PDF_OCR_CONCURRENCY + 4
        self._pool = None

    @property
    def pool(self):
        """Get or create the connection pool."""
        if self._pool is None or self._pool.closed:
            try:
                self._pool = pool.ThreadedConnectionPool(1, self.max_connections, self.dsn)
            except psycopg2.OperationalError as e:
                raise StoreUnavailable(f"Cannot connect to database: {e}") from e
        return self._pool

    def close(self):
        """Close all pooled connections."""
        if self._pool and not self._pool.closed:
            self._pool.closeall()
            self._pool = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        try:
            conn = self.pool.getconn()
        except (psycopg2.OperationalError, pool.PoolError) as e:
            raise StoreUnavailable(f"No database connection available: {e}") from e
        broken = False
        cur = conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cur
            conn.commit()
        except psycopg2.OperationalError as e:
            broken = True
            raise StoreUnavailable(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            self.pool.putconn(conn, close=broken or bool(conn.closed))

    def ensure_schema(self) -> None:
        """Create tables and indexes if missing."""
        with self.cursor() as cur:
            cur.execute(SCHEMA)
        logger.info("Database schema ready")

    # Queue items

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        with self.cursor() as cur:
            cur.execute(f"SELECT * FROM {QUEUE_TABLE} WHERE id = %s", (item_id,))
            row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def find_item(self, webhook_source: str, webhook_id: str,
                  attachment_index: Optional[int] = None) -> Optional[QueueItem]:
        """Look up the item created for one webhook attachment."""
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT * FROM {QUEUE_TABLE}
                WHERE webhook_source = %s
                  AND webhook_id = %s
                  AND COALESCE(attachment_index, -1) = COALESCE(%s, -1)
                LIMIT 1
            """, (webhook_source, webhook_id, attachment_index))
            row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def add_item_if_absent(self, item: QueueItem) -> Optional[str]:
        """Insert an item unless one exists for the same attachment. Returns new id or None."""
        row = item.to_row()
        columns = list(row)
        query = sql.SQL("""
            INSERT INTO {table} ({columns}) VALUES ({values})
            ON CONFLICT (webhook_source, webhook_id, (COALESCE(attachment_index, -1))) DO NOTHING
            RETURNING id
        """).format(
            table=sql.Identifier(QUEUE_TABLE),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        with self.cursor() as cur:
            cur.execute(query, [row[c] for c in columns])
            created = cur.fetchone()
        return created["id"] if created else None

    def update_item(self, item_id: str, **values: Any) -> bool:
        """Set the given columns on one item. Returns False if it no longer exists."""
        unknown = set(values) - _ITEM_COLUMNS
        if unknown:
            raise ValueError(f"Unknown queue columns: {sorted(unknown)}")
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE id = %s RETURNING id").format(
            table=sql.Identifier(QUEUE_TABLE),
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
            ),
        )
        with self.cursor() as cur:
            cur.execute(query, [*values.values(), item_id])
            return cur.fetchone() is not None

    def delete_item(self, item_id: str) -> bool:
        with self.cursor() as cur:
            cur.execute(f"DELETE FROM {QUEUE_TABLE} WHERE id = %s RETURNING id", (item_id,))
            return cur.fetchone() is not None

    def query_eligible(self, limit: int = 50) -> List[QueueItem]:
        """Queued items whose retry time has passed, newest first."""
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT * FROM {QUEUE_TABLE}
                WHERE status = %s
                  AND (next_retry_at IS NULL OR next_retry_at <= NOW())
                ORDER BY COALESCE(received_at, created_at) DESC
                LIMIT %s
            """, (QUEUED, limit))
            return [QueueItem.from_row(row) for row in cur.fetchall()]

    def list_items(self, status: Optional[str] = None, media_type: Optional[str] = None,
                   limit: int = 200) -> List[QueueItem]:
        """Filtered snapshot of the queue, most recently created first."""
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT * FROM {QUEUE_TABLE}
                WHERE (%(status)s IS NULL OR status = %(status)s)
                  AND (%(media_type)s IS NULL OR media_type = %(media_type)s)
                ORDER BY created_at DESC
                LIMIT %(limit)s
            """, {"status": status, "media_type": media_type, "limit": limit})
            return [QueueItem.from_row(row) for row in cur.fetchall()]

    def claim_item(self, item_id: str) -> bool:
        """Move an eligible item from queued to processing (atomic claim).

        An item still waiting out its retry delay cannot be claimed.
        """
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE {QUEUE_TABLE}
                SET status = %s, last_attempt_at = NOW(), next_retry_at = NULL
                WHERE id = %s AND status = %s
                  AND (next_retry_at IS NULL OR next_retry_at <= NOW())
                RETURNING id
            """, (PROCESSING, item_id, QUEUED))
            return cur.fetchone() is not None

    def mark_processing(self, item_id: str) -> bool:
        """Move an item to processing whatever its current state."""
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE {QUEUE_TABLE}
                SET status = %s, last_attempt_at = NOW(), next_retry_at = NULL
                WHERE id = %s
                RETURNING id
            """, (PROCESSING, item_id))
            return cur.fetchone() is not None

    def reset_stale(self, seconds: int) -> List[str]:
        """Return items stuck in processing for longer than `seconds` to the queue."""
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE {QUEUE_TABLE}
                SET status = %s
                WHERE status = %s
                  AND COALESCE(last_attempt_at, created_at) < NOW() - make_interval(secs => %s)
                RETURNING id
            """, (QUEUED, PROCESSING, seconds))
            reset = [row["id"] for row in cur.fetchall()]
        if reset:
            logger.warning(f"Reset {len(reset)} stuck processing items")
        return reset

    def delete_without_url(self, statuses: Iterable[str]) -> List[str]:
        """Delete items in the given states that have no media URL."""
        with self.cursor() as cur:
            cur.execute(f"""
                DELETE FROM {QUEUE_TABLE}
                WHERE status = ANY(%s)
                  AND (media_url IS NULL OR media_url = '')
                RETURNING id
            """, (list(statuses),))
            return [row["id"] for row in cur.fetchall()]

    def queue_keys(self) -> List[Dict[str, Any]]:
        """Source identity of every queued attachment."""
        with self.cursor() as cur:
            cur.execute(f"SELECT webhook_id, webhook_source, attachment_index FROM {QUEUE_TABLE}")
            return [dict(row) for row in cur.fetchall()]

    def done_items_with_text(self, limit: int = 500) -> List[QueueItem]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT * FROM {QUEUE_TABLE}
                WHERE status = %s AND COALESCE(extracted_text, '') <> ''
                ORDER BY processed_at DESC NULLS LAST
                LIMIT %s
            """, (DONE, limit))
            return [QueueItem.from_row(row) for row in cur.fetchall()]

    # Webhooks

    def get_webhook(self, source: str, webhook_id: str) -> Optional[Dict[str, Any]]:
        """Original inbound payload: {'id', 'payload', 'received_at'}."""
        table = WEBHOOK_TABLES.get(source)
        if table is None:
            raise ValueError(f"Unknown webhook source: {source}")
        with self.cursor() as cur:
            cur.execute(
                sql.SQL("SELECT id, payload, received_at FROM {} WHERE id = %s").format(sql.Identifier(table)),
                (webhook_id,),
            )
            row = cur.fetchone()
        return dict(row) if row else None
