"""Tests for the SQLite-backed EventStore."""

import json
import threading
from pathlib import Path

import pytest

from keyai.errors import StoreError
from keyai.models import CapturedEvent, Transition, WindowInfo
from keyai.store import EventStore

# --- Test Classes ---


class TestEventStoreBasics:
    """Opening, closing and counting."""

    def test_empty_store(self, store: EventStore):
        assert store.count() == 0
        assert store.count_embeddings() == 0
        assert store.count_indexed() == 0

    def test_db_path(self, store: EventStore, tmp_keyai_home: Path):
        assert store.db_path == tmp_keyai_home / "keyai.db"
        assert store.db_path.exists()

    def test_lazy_open(self, tmp_path: Path):
        lazy = EventStore(tmp_path / "lazy.db")
        assert not (tmp_path / "lazy.db").exists()
        assert lazy.count() == 0
        lazy.close()

    def test_reopen_keeps_data(self, tmp_path: Path, make_event):
        path = tmp_path / "persist.db"
        first = EventStore(path)
        first.store_events([make_event()])
        first.close()

        second = EventStore(path)
        assert second.count() == 1
        second.close()

    def test_open_failure_raises_store_error(self, tmp_path: Path):
        broken = EventStore(tmp_path / "no" / "such" / "dir" / "keyai.db")
        with pytest.raises(StoreError):
            broken.open()

    def test_close_twice(self, tmp_path: Path):
        s = EventStore(tmp_path / "x.db")
        s.open()
        s.close()
        s.close()


class TestStoreEvents:
    """Batch inserts."""

    def test_store_batch(self, store: EventStore, typed_events: list[CapturedEvent]):
        assert store.store_events(typed_events) == len(typed_events)
        assert store.count() == len(typed_events)

    def test_empty_batch(self, store: EventStore):
        assert store.store_events([]) == 0

    def test_duplicate_is_ignored(self, store: EventStore, make_event):
        event = make_event(symbol="a", timestamp=10)
        assert store.store_events([event]) == 1
        assert store.store_events([event]) == 0
        assert store.count() == 1

    def test_duplicate_within_batch(self, store: EventStore, make_event):
        events = [make_event(symbol="a", timestamp=10), make_event(symbol="a", timestamp=10)]
        assert store.store_events(events) == 1

    def test_press_and_release_are_distinct(self, store: EventStore, make_event):
        events = [
            make_event(symbol="a", timestamp=10, transition=Transition.PRESS),
            make_event(symbol="a", timestamp=10, transition=Transition.RELEASE),
        ]
        assert store.store_events(events) == 2

    def test_fields_persisted(self, store: EventStore, make_event, editor_window: WindowInfo):
        store.store_events([make_event(symbol="q", timestamp=77, window=editor_window)])
        event = store.search_by_range(77, 77)[0]

        assert event.symbol == "q"
        assert event.transition is Transition.PRESS
        assert event.window_title == "notes.txt - Editor"
        assert event.application == "TextEdit"
        assert event.derived_text == "q"
        assert event.created_at
        assert store.get_event(event.id) == event

    def test_release_has_no_derived_text(self, store: EventStore, make_event):
        store.store_events([make_event(symbol="q", timestamp=5, transition=Transition.RELEASE)])
        assert store.search_by_range(5, 5)[0].derived_text is None

    def test_every_event_is_indexed(self, store: EventStore, typed_events: list[CapturedEvent]):
        store.store_events(typed_events)
        assert store.count_indexed() == store.count()

    def test_get_missing_event(self, store: EventStore):
        assert store.get_event(12345) is None

    def test_concurrent_writers(self, store: EventStore, make_event):
        def write(offset: int):
            store.store_events([make_event(symbol="w", timestamp=offset * 1000 + i) for i in range(100)])

        threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.count() == 400


class TestStats:
    def test_empty_stats(self, store: EventStore):
        stats = store.get_stats()
        assert stats.total_events == 0
        assert stats.oldest_event is None
        assert stats.newest_event is None
        assert stats.total_size_bytes > 0

    def test_thousand_events(self, store: EventStore, make_event):
        store.store_events([make_event(symbol="k", timestamp=t) for t in range(1000)])
        stats = store.get_stats()
        assert stats.total_events == 1000
        assert stats.oldest_event == 0
        assert stats.newest_event == 999


class TestRangeQueries:
    def test_newest_first_within_bounds(self, store: EventStore, make_event):
        store.store_events([make_event(symbol="r", timestamp=t) for t in (10, 20, 30, 40)])
        events = store.search_by_range(15, 40)
        assert [e.timestamp for e in events] == [40, 30, 20]

    def test_limit(self, store: EventStore, make_event):
        store.store_events([make_event(symbol="r", timestamp=t) for t in range(50)])
        assert len(store.search_by_range(0, 100, limit=5)) == 5

    def test_iter_events_with_text(self, store: EventStore, make_event):
        store.store_events(
            [
                make_event(symbol="a", timestamp=1),
                make_event(symbol="ShiftLeft", timestamp=2, is_modifier=True),
                make_event(symbol="Space", timestamp=3),
                make_event(symbol="b", timestamp=4, transition=Transition.RELEASE),
                make_event(symbol="c", timestamp=5),
            ]
        )
        events = store.iter_events_with_text()
        assert [e.derived_text for e in events] == ["c", "a"]
        assert len(store.iter_events_with_text(limit=1)) == 1


class TestEmbeddings:
    def test_round_trip(self, store: EventStore, make_event):
        store.store_events([make_event()])
        event_id = store.search_by_range(0, 10_000)[0].id
        store.store_embedding(event_id, [0.5, -0.25, 1.0])
        assert store.get_embedding(event_id) == [0.5, -0.25, 1.0]
        assert store.count_embeddings() == 1

    def test_replace(self, store: EventStore, make_event):
        store.store_events([make_event()])
        event_id = store.search_by_range(0, 10_000)[0].id
        store.store_embedding(event_id, [1.0])
        store.store_embedding(event_id, [2.0])
        assert store.get_embedding(event_id) == [2.0]
        assert store.count_embeddings() == 1

    def test_missing_event_raises(self, store: EventStore):
        with pytest.raises(StoreError):
            store.store_embedding(999, [1.0])

    def test_missing_embedding(self, store: EventStore):
        assert store.get_embedding(1) is None


class TestClearAll:
    def test_clears_events_index_and_embeddings(self, store: EventStore, typed_events: list[CapturedEvent]):
        store.store_events(typed_events)
        first_id = store.search_by_range(0, 10_000)[-1].id
        store.store_embedding(first_id, [1.0, 0.0])

        store.clear_all()

        assert store.count() == 0
        assert store.count_indexed() == 0
        assert store.count_embeddings() == 0
        assert store.search_text("hello") == []

    def test_store_after_clear(self, store: EventStore, make_event):
        store.store_events([make_event()])
        store.clear_all()
        assert store.store_events([make_event()]) == 1


class TestMaintenance:
    def test_vacuum_and_optimize(self, store: EventStore, typed_events: list[CapturedEvent]):
        store.store_events(typed_events)
        store.vacuum()
        store.optimize()
        assert store.count() == len(typed_events)

    def test_rebuild_search_index(self, store: EventStore, typed_events: list[CapturedEvent]):
        store.store_events(typed_events)
        assert store.rebuild_search_index() == len(typed_events)
        assert store.search_text("h")


class TestExport:
    def test_export_all(self, store: EventStore, typed_events: list[CapturedEvent], tmp_path: Path):
        store.store_events(typed_events)
        path = tmp_path / "export.json"

        count = store.export_events(path)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert count == len(typed_events) == len(data)
        assert data[0]["symbol"] == "h"
        assert [row["timestamp"] for row in data] == sorted(row["timestamp"] for row in data)

    def test_export_range(self, store: EventStore, make_event, tmp_path: Path):
        store.store_events([make_event(symbol="e", timestamp=t) for t in (1, 5, 9)])
        path = tmp_path / "range.json"
        assert store.export_events(path, start=2, end=8) == 1
        assert json.loads(path.read_text(encoding="utf-8"))[0]["timestamp"] == 5


class TestEncryptedStore:
    """SQLCipher-backed store reports driver failures like plain SQLite."""

    @pytest.fixture
    def encrypted_store(self, tmp_path: Path):
        pytest.importorskip("sqlcipher3")
        event_store = EventStore(tmp_path / "encrypted.db", key="secret")
        event_store.open()
        yield event_store
        event_store.close()

    def test_store_and_search(self, encrypted_store: EventStore, typed_events: list[CapturedEvent]):
        assert encrypted_store.store_events(typed_events) == len(typed_events)
        assert len(encrypted_store.search_text("Editor")) == len(typed_events)

    def test_failed_batch_raises_store_error(self, encrypted_store: EventStore, make_event):
        encrypted_store._get_conn().execute("DROP TABLE events_fts")
        with pytest.raises(StoreError, match="events_fts"):
            encrypted_store.store_events([make_event()])

    def test_malformed_query_returns_empty(self, encrypted_store: EventStore, typed_events: list[CapturedEvent]):
        encrypted_store.store_events(typed_events)
        assert encrypted_store.search_text("AND") == []
