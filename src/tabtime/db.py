"""SQLite event, accumulation and key-value store for tabtime."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from tabtime.models import AccumulationDelta, Event, accumulation_key, now_ms

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    tab_id INTEGER NOT NULL,
    url TEXT NOT NULL,
    visit_id TEXT NOT NULL,
    activity_id TEXT,
    is_processed INTEGER NOT NULL DEFAULT 0,
    resolution TEXT
);

CREATE TABLE IF NOT EXISTS aggregated_stats (
    key TEXT PRIMARY KEY,
    date TEXT NOT NULL,
    url TEXT NOT NULL,
    hostname TEXT NOT NULL,
    parent_domain TEXT NOT NULL,
    total_open_time INTEGER NOT NULL DEFAULT 0,
    total_active_time INTEGER NOT NULL DEFAULT 0,
    last_updated INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_processed ON events(is_processed);
CREATE INDEX IF NOT EXISTS idx_events_visit ON events(visit_id);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
CREATE INDEX IF NOT EXISTS idx_stats_date ON aggregated_stats(date);
CREATE INDEX IF NOT EXISTS idx_stats_hostname ON aggregated_stats(hostname);
CREATE INDEX IF NOT EXISTS idx_stats_parent_domain ON aggregated_stats(parent_domain);
"""

# Stay under SQLite's 999-parameter limit
BATCH_SIZE = 500

logger = logging.getLogger(__name__)


class SQLiteStore:
    """SQLite-backed event log, accumulation table and key-value settings.

    Serves as EventStore, StatStore, KVStore and ConfigStore for the
    aggregation engine, lock, scheduler and pruner. Statements are
    serialised on an internal lock so a timer thread and the main thread
    can share one store.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._init_schema()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> SQLiteStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> SQLiteStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    # Events

    def insert_event(self, event: Event) -> int:
        """Append an event to the log. Returns the assigned ID.

        The event's own ``id`` and ``is_processed`` are ignored: IDs are
        assigned by the store and new events always start unprocessed.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO events
                (timestamp, event_type, tab_id, url, visit_id, activity_id, is_processed, resolution)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    event.timestamp,
                    event.event_type.value,
                    event.tab_id,
                    event.url,
                    event.visit_id,
                    event.activity_id,
                    event.resolution,
                ),
            )
            self._conn.commit()
            return int(cursor.lastrowid)

    def fetch_unprocessed_events(self) -> list[Event]:
        """All unprocessed events, in insertion (ID) order."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM events WHERE is_processed = 0 ORDER BY id ASC"
            )
            return [Event.from_row(row) for row in cursor.fetchall()]

    def mark_processed(self, event_ids: list[int]) -> int:
        """Flag events as processed. Returns the number of rows changed.

        All batches are committed in one transaction.
        """
        if not event_ids:
            return 0
        with self._lock, self._conn:
            return self._mark_rows(event_ids)

    def _mark_rows(self, event_ids: list[int]) -> int:
        changed = 0
        for i in range(0, len(event_ids), BATCH_SIZE):
            batch = event_ids[i : i + BATCH_SIZE]
            placeholders = ",".join("?" * len(batch))
            cursor = self._conn.execute(
                f"""
                UPDATE events SET is_processed = 1
                WHERE is_processed = 0 AND id IN ({placeholders})
                """,
                batch,
            )
            changed += cursor.rowcount
        return changed

    def get_events(
        self,
        *,
        visit_id: str | None = None,
        processed: bool | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Query events, optionally filtered by visit and processed flag.

        Returns:
            Events ordered by timestamp, then ID.
        """
        query = "SELECT * FROM events WHERE 1=1"
        params: list[str | int] = []

        if visit_id is not None:
            query += " AND visit_id = ?"
            params.append(visit_id)
        if processed is not None:
            query += " AND is_processed = ?"
            params.append(int(processed))

        query += " ORDER BY timestamp ASC, id ASC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            cursor = self._conn.execute(query, params)
            return [Event.from_row(row) for row in cursor.fetchall()]

    def get_processed_events_older_than(self, timestamp: int) -> list[Event]:
        """Processed events with a timestamp strictly before ``timestamp``."""
        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT * FROM events
                WHERE is_processed = 1 AND timestamp < ?
                ORDER BY id ASC
                """,
                (timestamp,),
            )
            return [Event.from_row(row) for row in cursor.fetchall()]

    def delete_events_by_ids(self, event_ids: list[int]) -> int:
        """Delete events by ID. Returns the number deleted."""
        if not event_ids:
            return 0
        deleted = 0
        with self._lock, self._conn:
            for i in range(0, len(event_ids), BATCH_SIZE):
                batch = event_ids[i : i + BATCH_SIZE]
                placeholders = ",".join("?" * len(batch))
                cursor = self._conn.execute(
                    f"DELETE FROM events WHERE id IN ({placeholders})",
                    batch,
                )
                deleted += cursor.rowcount
        return deleted

    # Accumulations

    def upsert_accumulation(
        self,
        date: str,
        url: str,
        hostname: str,
        parent_domain: str,
        open_delta: int,
        active_delta: int,
    ) -> str:
        """Add time to the (date, url) record, creating it if needed.

        Totals only ever grow: an existing record is updated by addition,
        never overwritten.

        Returns:
            The record key ("date:url").

        Raises:
            ValueError: If either delta is negative.
        """
        with self._lock, self._conn:
            return self._upsert_row(date, url, hostname, parent_domain, open_delta, active_delta)

    def _upsert_row(
        self,
        date: str,
        url: str,
        hostname: str,
        parent_domain: str,
        open_delta: int,
        active_delta: int,
    ) -> str:
        if open_delta < 0 or active_delta < 0:
            raise ValueError(
                f"Accumulation deltas must be non-negative (open={open_delta}, active={active_delta})"
            )
        key = accumulation_key(date, url)
        self._conn.execute(
            """
            INSERT INTO aggregated_stats
            (key, date, url, hostname, parent_domain, total_open_time, total_active_time, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                total_open_time = total_open_time + excluded.total_open_time,
                total_active_time = total_active_time + excluded.total_active_time,
                last_updated = excluded.last_updated
            """,
            (key, date, url, hostname, parent_domain, open_delta, active_delta, now_ms()),
        )
        return key

    def commit_aggregation(
        self, deltas: list[AccumulationDelta], event_ids: list[int]
    ) -> int:
        """Apply a run's accumulations and mark its events in one transaction.

        Either every upsert and the processed flags are committed, or none
        of them are, so a failed run can be retried without counting any
        time twice.

        Returns:
            The number of events marked processed.
        """
        with self._lock, self._conn:
            for delta in deltas:
                self._upsert_row(
                    delta.date,
                    delta.url,
                    delta.hostname,
                    delta.parent_domain,
                    delta.open_time_to_add,
                    delta.active_time_to_add,
                )
            return self._mark_rows(event_ids) if event_ids else 0

    def get_stats(self, *, date: str | None = None) -> list[dict[str, Any]]:
        """Accumulation records, optionally for one UTC date."""
        query = "SELECT * FROM aggregated_stats"
        params: list[str] = []
        if date is not None:
            query += " WHERE date = ?"
            params.append(date)
        query += " ORDER BY date ASC, key ASC"
        with self._lock:
            cursor = self._conn.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def get_domain_totals(self, *, date: str | None = None) -> list[dict[str, Any]]:
        """Open/active totals summed per parent domain.

        Returns:
            Dicts with parent_domain, open_ms, active_ms, url_count, ordered
            by open time descending.
        """
        query = """
            SELECT
                parent_domain,
                SUM(total_open_time) AS open_ms,
                SUM(total_active_time) AS active_ms,
                COUNT(DISTINCT url) AS url_count
            FROM aggregated_stats
        """
        params: list[str] = []
        if date is not None:
            query += " WHERE date = ?"
            params.append(date)
        query += " GROUP BY parent_domain ORDER BY open_ms DESC, parent_domain ASC"
        with self._lock:
            cursor = self._conn.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    # Key-value settings and runtime state

    def get(self, key: str) -> Any:
        """JSON-decoded value for ``key``, or None."""
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable value for %s", key)
            return None

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-encodable value under ``key``."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO kv (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, json.dumps(value)),
            )

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it existed."""
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        return cursor.rowcount > 0
