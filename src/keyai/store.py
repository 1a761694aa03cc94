"""SQLite-backed event store for KeyAI.

EventStore owns the single database connection. SQLite allows one writer at
a time, so every statement, read or write, runs under one lock that is held
only for the duration of that statement (or of one batch transaction).
Searches issued from the admin side and batch commits from the flusher
therefore interleave at statement granularity.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from keyai.db import (
    DATABASE_ERRORS,
    connect,
    database_size_bytes,
    initialize_schema,
    optimize_database,
    vacuum_database,
)
from keyai.errors import StoreError
from keyai.models import CapturedEvent, DatabaseStats, StoredEvent, Transition
from keyai.vec import deserialize_embedding, serialize_embedding

if TYPE_CHECKING:
    from keyai.search import SearchHit

logger = logging.getLogger(__name__)


class EventStore:
    """Serialized access to the local event database.

    The connection is opened lazily on first use; call ``open()`` to surface
    an open failure early (the only failure that is fatal to the process).
    """

    def __init__(self, db_path: str | Path, key: str | None = None):
        self._db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._key = key
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def db_path(self):
        """Path to the SQLite database file."""
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create the connection. Caller must hold the lock."""
        if self._conn is None:
            self._conn = connect(self._db_path, self._key)
            initialize_schema(self._conn)
            logger.info(f"Event database ready: {self._db_path}")
        return self._conn

    def open(self) -> None:
        """Open the database and create the schema if needed.

        Raises:
            StoreError: If the database cannot be opened.
        """
        with self._lock:
            self._get_conn()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # --- Writes ---

    def store_events(self, events: list[CapturedEvent]) -> int:
        """Insert a batch of already-masked events in one transaction.

        Rows that collide on (timestamp, symbol, transition) are ignored.
        Any other failure rolls the whole batch back.

        Args:
            events: Masked events from the flush buffer.

        Returns:
            Number of rows actually inserted.

        Raises:
            StoreError: If the transaction fails.
        """
        if not events:
            return 0

        rows = [
            (
                event.timestamp,
                event.symbol,
                event.transition.value,
                event.window.title if event.window else None,
                event.window.application if event.window else None,
                event.derived_text,
            )
            for event in events
        ]

        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    cursor = conn.executemany(
                        """
                        INSERT OR IGNORE INTO events
                            (timestamp, symbol, transition, window_title, application, derived_text)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        rows,
                    )
                    inserted = cursor.rowcount
            except DATABASE_ERRORS as e:
                raise StoreError(f"Batch insert of {len(rows)} events failed: {e}") from e

        logger.debug(f"Stored {inserted} of {len(rows)} events")
        return inserted

    def store_embedding(self, event_id: int, embedding: list[float]) -> None:
        """Store (or replace) the embedding of an event.

        Raises:
            StoreError: If the event does not exist or the write fails.
        """
        blob = serialize_embedding(embedding)
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO embeddings (event_id, embedding) VALUES (?, ?)",
                        (event_id, blob),
                    )
            except DATABASE_ERRORS as e:
                raise StoreError(f"Failed to store embedding for event {event_id}: {e}") from e

    def clear_all(self) -> None:
        """Delete every event, index entry and embedding, then VACUUM."""
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM embeddings")
                    conn.execute("DELETE FROM events")
                    conn.execute("INSERT INTO events_fts(events_fts) VALUES('delete-all')")
                vacuum_database(conn)
            except DATABASE_ERRORS as e:
                raise StoreError(f"Failed to clear database: {e}") from e
        logger.info("All captured data removed")

    # --- Reads ---

    def get_event(self, event_id: int) -> StoredEvent | None:
        with self._lock:
            row = self._get_conn().execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return row_to_event(row) if row is not None else None

    def get_embedding(self, event_id: int) -> list[float] | None:
        """Return the cached embedding of an event, or None."""
        with self._lock:
            row = (
                self._get_conn()
                .execute("SELECT embedding FROM embeddings WHERE event_id = ?", (event_id,))
                .fetchone()
            )
        if row is None:
            return None
        return deserialize_embedding(row[0])

    def search_text(self, query: str, limit: int = 50) -> list[SearchHit]:
        """Full-text search ranked by FTS5's BM25.

        Args:
            query: Search query (FTS5 syntax; special characters are quoted).
            limit: Maximum results to return.

        Returns:
            SearchHit objects, most relevant first.
        """
        from keyai.search import fts_search

        with self._lock:
            return fts_search(self._get_conn(), query, limit)

    def search_by_range(self, start: int, end: int, limit: int = 100) -> list[StoredEvent]:
        """Events with start <= timestamp <= end, newest first."""
        with self._lock:
            rows = (
                self._get_conn()
                .execute(
                    """
                    SELECT * FROM events
                    WHERE timestamp BETWEEN ? AND ?
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                    """,
                    (start, end, limit),
                )
                .fetchall()
            )
        return [row_to_event(row) for row in rows]

    def iter_events_with_text(self, limit: int | None = None) -> list[StoredEvent]:
        """Events carrying non-blank derived text, newest first.

        This is the candidate set scanned by semantic search.
        """
        sql = """
            SELECT * FROM events
            WHERE derived_text IS NOT NULL AND trim(derived_text) != ''
            ORDER BY timestamp DESC, id DESC
        """
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._lock:
            rows = self._get_conn().execute(sql, params).fetchall()
        return [row_to_event(row) for row in rows]

    def count(self) -> int:
        """Return the number of stored events."""
        with self._lock:
            return self._get_conn().execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def count_embeddings(self) -> int:
        with self._lock:
            return self._get_conn().execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def count_indexed(self) -> int:
        """Return the number of rows in the full-text index."""
        with self._lock:
            return self._get_conn().execute("SELECT COUNT(*) FROM events_fts").fetchone()[0]

    def get_stats(self) -> DatabaseStats:
        """Return event count, file size and timestamp range."""
        with self._lock:
            conn = self._get_conn()
            row = conn.execute("SELECT COUNT(*), MIN(timestamp), MAX(timestamp) FROM events").fetchone()
            embedding_count = conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
            size = database_size_bytes(conn)

        return DatabaseStats(
            total_events=row[0],
            total_size_bytes=size,
            oldest_event=row[1],
            newest_event=row[2],
            embedding_count=embedding_count,
        )

    # --- Maintenance ---

    def vacuum(self) -> None:
        """Reclaim free pages."""
        with self._lock:
            vacuum_database(self._get_conn())
        logger.info("Database vacuumed")

    def optimize(self) -> None:
        """Merge full-text index segments and refresh planner statistics."""
        with self._lock:
            optimize_database(self._get_conn())
        logger.info("Search index optimized")

    def rebuild_search_index(self) -> int:
        """Rebuild the FTS5 index from the events table.

        Returns:
            Number of events indexed.
        """
        with self._lock:
            conn = self._get_conn()
            with conn:
                conn.execute("INSERT INTO events_fts(events_fts) VALUES('rebuild')")
            return conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def export_events(self, path: str | Path, start: int = 0, end: int | None = None) -> int:
        """Write stored (already redacted) events to a JSON file.

        Args:
            path: Destination file.
            start: Lower timestamp bound (inclusive).
            end: Upper timestamp bound (inclusive); None means no bound.

        Returns:
            Number of events exported.
        """
        with self._lock:
            conn = self._get_conn()
            if end is None:
                rows = conn.execute(
                    "SELECT * FROM events WHERE timestamp >= ? ORDER BY timestamp, id", (start,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE timestamp BETWEEN ? AND ? ORDER BY timestamp, id",
                    (start, end),
                ).fetchall()

        events = [row_to_event(row).to_dict() for row in rows]
        Path(path).write_text(json.dumps(events, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info(f"Exported {len(events)} events to {path}")
        return len(events)


def row_to_event(row) -> StoredEvent:
    """Convert a database row to a StoredEvent."""
    return StoredEvent(
        id=row["id"],
        timestamp=row["timestamp"],
        symbol=row["symbol"],
        transition=Transition(row["transition"]),
        window_title=row["window_title"],
        application=row["application"],
        derived_text=row["derived_text"],
        created_at=row["created_at"] or "",
    )
