"""Tests for database connection and schema management."""

import sqlite3
from pathlib import Path

import pytest

from keyai.db import (
    DATABASE_ERRORS,
    OPERATIONAL_ERRORS,
    SCHEMA_VERSION,
    check_fts5_available,
    check_sqlcipher_available,
    connect,
    database_size_bytes,
    initialize_schema,
    optimize_database,
)
from keyai.errors import StoreError

# --- Fixtures ---


@pytest.fixture
def conn(tmp_path: Path):
    """A connection with the schema initialized."""
    connection = connect(tmp_path / "test.db")
    initialize_schema(connection)
    yield connection
    connection.close()


def _table_names(connection: sqlite3.Connection) -> set[str]:
    rows = connection.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'trigger')").fetchall()
    return {row[0] for row in rows}


# --- Test Classes ---


class TestConnect:
    def test_wal_mode(self, conn: sqlite3.Connection):
        assert conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"

    def test_foreign_keys_enabled(self, conn: sqlite3.Connection):
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_row_factory(self, conn: sqlite3.Connection):
        row = conn.execute("SELECT 1 AS one").fetchone()
        assert row["one"] == 1

    def test_unopenable_path_raises_store_error(self, tmp_path: Path):
        with pytest.raises(StoreError):
            connect(tmp_path / "missing-dir" / "nested" / "x.db")

    def test_error_classes_include_sqlite3(self):
        assert sqlite3.Error in DATABASE_ERRORS
        assert sqlite3.OperationalError in OPERATIONAL_ERRORS

    def test_error_classes_include_sqlcipher(self):
        sqlcipher3 = pytest.importorskip("sqlcipher3")
        assert sqlcipher3.dbapi2.Error in DATABASE_ERRORS
        assert sqlcipher3.dbapi2.OperationalError in OPERATIONAL_ERRORS

    def test_key_without_sqlcipher(self, tmp_path: Path):
        if check_sqlcipher_available():
            pytest.skip("sqlcipher3 installed")
        with pytest.raises(StoreError, match="sqlcipher3"):
            connect(tmp_path / "enc.db", key="secret")


class TestSchema:
    def test_tables_and_triggers_created(self, conn: sqlite3.Connection):
        names = _table_names(conn)
        assert {"events", "events_fts", "embeddings", "schema_version"} <= names
        assert {"events_fts_ai", "events_fts_ad", "events_fts_au"} <= names

    def test_schema_version_recorded(self, conn: sqlite3.Connection):
        assert conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0] == SCHEMA_VERSION

    def test_initialize_is_idempotent(self, conn: sqlite3.Connection):
        initialize_schema(conn)
        initialize_schema(conn)
        count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
        assert count == 1

    def test_unique_constraint(self, conn: sqlite3.Connection):
        conn.execute("INSERT INTO events (timestamp, symbol, transition) VALUES (1, 'a', 'press')")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("INSERT INTO events (timestamp, symbol, transition) VALUES (1, 'a', 'press')")

    def test_insert_trigger_indexes_text(self, conn: sqlite3.Connection):
        conn.execute(
            "INSERT INTO events (timestamp, symbol, transition, derived_text, application) "
            "VALUES (1, 'a', 'press', 'a', 'Terminal')"
        )
        conn.commit()
        rows = conn.execute("SELECT rowid FROM events_fts WHERE events_fts MATCH 'Terminal'").fetchall()
        assert len(rows) == 1

    def test_delete_trigger_removes_index_entry(self, conn: sqlite3.Connection):
        conn.execute(
            "INSERT INTO events (timestamp, symbol, transition, derived_text, application) "
            "VALUES (1, 'a', 'press', 'a', 'Terminal')"
        )
        conn.execute("DELETE FROM events")
        conn.commit()
        rows = conn.execute("SELECT rowid FROM events_fts WHERE events_fts MATCH 'Terminal'").fetchall()
        assert rows == []

    def test_embedding_cascades(self, conn: sqlite3.Connection):
        conn.execute("INSERT INTO events (id, timestamp, symbol, transition) VALUES (1, 1, 'a', 'press')")
        conn.execute("INSERT INTO embeddings (event_id, embedding) VALUES (1, x'00000000')")
        conn.execute("DELETE FROM events WHERE id = 1")
        conn.commit()
        assert conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0] == 0


class TestMaintenance:
    def test_fts5_available(self):
        assert check_fts5_available() is True

    def test_size_positive(self, conn: sqlite3.Connection):
        assert database_size_bytes(conn) > 0

    def test_optimize_runs(self, conn: sqlite3.Connection):
        optimize_database(conn)
