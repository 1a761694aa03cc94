"""SQLite database management for KeyAI.

Provides connection management and schema creation for the local event
database. The schema has three parts:

- events: one row per redacted key transition, unique on
  (timestamp, symbol, transition) so repeated inserts are no-ops.
- events_fts: FTS5 external-content index over derived text and window
  context, written only by triggers on events.
- embeddings: one float32 vector per event, deleted with its event.

Schema version is tracked in schema_version for future migrations.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from keyai.errors import StoreError

logger = logging.getLogger(__name__)

# WHAT: Current schema version for migration tracking.
SCHEMA_VERSION = 1


def _driver_errors(name: str) -> tuple[type[Exception], ...]:
    """Collect a DB-API exception class from every installed driver.

    sqlcipher3 ships its own exception hierarchy that does not derive from
    sqlite3's, so a handler must name both.
    """
    classes: list[type[Exception]] = [getattr(sqlite3, name)]
    try:
        from sqlcipher3 import dbapi2 as sqlcipher
    except ImportError:
        return tuple(classes)
    classes.append(getattr(sqlcipher, name))
    return tuple(classes)


# Base error and query error classes of the plain and encrypted drivers.
DATABASE_ERRORS = _driver_errors("Error")
OPERATIONAL_ERRORS = _driver_errors("OperationalError")


def connect(db_path: str | Path, key: str | None = None) -> sqlite3.Connection:
    """Open a connection to the event database.

    Configures:
    - SQLCipher encryption when ``key`` is given
    - WAL mode for readers during writes
    - NORMAL synchronous mode (safe with WAL, faster than FULL)
    - Foreign keys, so embeddings cascade with their events
    - Row factory for dict-like access

    Args:
        db_path: Path to the database file (or ":memory:").
        key: Optional SQLCipher passphrase.

    Returns:
        A configured connection.

    Raises:
        StoreError: If the database cannot be opened.
    """
    try:
        if key:
            conn = _connect_encrypted(str(db_path), key)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA temp_store=MEMORY")
    except StoreError:
        raise
    except DATABASE_ERRORS as e:
        raise StoreError(f"Cannot open database {db_path}: {e}") from e

    return conn


def _connect_encrypted(db_path: str, key: str) -> sqlite3.Connection:
    """Open a SQLCipher connection and apply the passphrase.

    Raises:
        StoreError: If the sqlcipher3 driver is not installed. An encrypted
            database is never opened as plain SQLite.
    """
    try:
        from sqlcipher3 import dbapi2 as sqlcipher
    except ImportError as e:
        raise StoreError("db_key is set but sqlcipher3 is not installed. Install with: pip install 'keyai[encryption]'") from e

    conn = sqlcipher.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlcipher.Row
    escaped = key.replace("'", "''")
    conn.execute(f"PRAGMA key = '{escaped}'")
    # WHAT: Touch the schema to verify the key.
    # WHY: SQLCipher only reports a wrong key on first read.
    conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create all tables, indexes and triggers if they don't exist.

    Idempotent; runs on every connection.

    Args:
        conn: SQLite connection to initialize.
    """
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp INTEGER NOT NULL,
            symbol TEXT NOT NULL,
            transition TEXT NOT NULL,
            window_title TEXT,
            application TEXT,
            derived_text TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(timestamp, symbol, transition)
        );

        CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_application ON events(application);

        CREATE TABLE IF NOT EXISTS embeddings (
            event_id INTEGER PRIMARY KEY REFERENCES events(id) ON DELETE CASCADE,
            embedding BLOB NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL,
            description TEXT NOT NULL
        );
    """)

    _initialize_fts5(conn)
    _record_schema_version(conn)
    conn.commit()


def _initialize_fts5(conn: sqlite3.Connection) -> None:
    """Create the FTS5 virtual table and its sync triggers.

    The index is an external-content table over events; triggers are the
    only writers, so it cannot drift from the events table.

    Args:
        conn: SQLite connection.
    """
    cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='events_fts'")
    if cursor.fetchone() is not None:
        return

    conn.executescript("""
        CREATE VIRTUAL TABLE events_fts USING fts5(
            derived_text,
            application,
            window_title,
            content='events',
            content_rowid='id'
        );

        CREATE TRIGGER events_fts_ai AFTER INSERT ON events BEGIN
            INSERT INTO events_fts(rowid, derived_text, application, window_title)
                VALUES (new.id, new.derived_text, new.application, new.window_title);
        END;

        CREATE TRIGGER events_fts_ad AFTER DELETE ON events BEGIN
            INSERT INTO events_fts(events_fts, rowid, derived_text, application, window_title)
                VALUES ('delete', old.id, old.derived_text, old.application, old.window_title);
        END;

        CREATE TRIGGER events_fts_au AFTER UPDATE ON events BEGIN
            INSERT INTO events_fts(events_fts, rowid, derived_text, application, window_title)
                VALUES ('delete', old.id, old.derived_text, old.application, old.window_title);
            INSERT INTO events_fts(rowid, derived_text, application, window_title)
                VALUES (new.id, new.derived_text, new.application, new.window_title);
        END;
    """)


def _record_schema_version(conn: sqlite3.Connection) -> None:
    cursor = conn.execute(
        "SELECT version FROM schema_version WHERE version = ?",
        (SCHEMA_VERSION,),
    )
    if cursor.fetchone() is not None:
        return

    now = datetime.now(timezone.utc).isoformat()
    conn.execute(
        "INSERT INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
        (SCHEMA_VERSION, now, "events, events_fts, embeddings"),
    )


def check_fts5_available() -> bool:
    """Check if FTS5 is available in this Python's SQLite.

    Returns:
        True if FTS5 is available, False otherwise.
    """
    try:
        conn = sqlite3.connect(":memory:")
        conn.execute("CREATE VIRTUAL TABLE test_fts USING fts5(content)")
        conn.close()
        return True
    except sqlite3.OperationalError:
        return False


def check_sqlcipher_available() -> bool:
    """Check if the sqlcipher3 driver is installed."""
    try:
        import sqlcipher3  # noqa: F401

        return True
    except ImportError:
        return False


def vacuum_database(conn: sqlite3.Connection) -> None:
    """Reclaim space after bulk deletes.

    VACUUM cannot run inside a transaction; callers must have committed.
    """
    conn.execute("VACUUM")


def optimize_database(conn: sqlite3.Connection) -> None:
    """Merge FTS5 index segments and refresh the query planner statistics."""
    conn.execute("INSERT INTO events_fts(events_fts) VALUES('optimize')")
    conn.commit()
    conn.execute("PRAGMA optimize")


def database_size_bytes(conn: sqlite3.Connection) -> int:
    """Return page_count * page_size for the main database."""
    row = conn.execute("SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()").fetchone()
    return row[0] if row and row[0] is not None else 0
