"""Tests for the online store abstraction and SQLite implementation."""

from __future__ import annotations

import sqlite3
from datetime import timedelta

import pyarrow as pa
import pytest

import quiver.online.sqlite as sqlite_store
import quiver.types as types


# ---------------------------------------------------------------------------
# SqliteOnlineStore CRUD tests
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path):
    """Create a SqliteOnlineStore with a temp database path."""
    db_path = str(tmp_path / "online.db")
    s = sqlite_store.SqliteOnlineStore(path=db_path)
    s.initialize()
    return s


def _key(user_id: str) -> str:
    return types.canonical_key({"user_id": user_id})


class TestSqliteOnlineStoreInitialize:
    def test_initialize_creates_db(self, tmp_path):
        """Initialize creates the database file and is idempotent."""
        db_path = tmp_path / "online.db"
        s = sqlite_store.SqliteOnlineStore(path=str(db_path))
        assert not db_path.exists()

        s.initialize()
        assert db_path.exists()

        # Idempotent -- second call does not error
        s.initialize()
        assert db_path.exists()


class TestSqliteOnlineStoreWriteRead:
    def test_write_and_read_features(self, store, t0):
        """Write a single entity and read it back."""
        stored = store.write_features(
            table_name="ads.clicks",
            entity_key={"user_id": "123"},
            features={"click_count": 5, "ctr": 0.25},
            event_timestamp=t0,
        )
        assert stored

        [record] = store.read_features("ads.clicks", [_key("123")])
        assert record.entity_key == _key("123")
        assert record.features == {"click_count": 5, "ctr": 0.25}
        assert record.event_timestamp == t0
        assert record.created_timestamp is None

    def test_newer_write_replaces(self, store, t0):
        store.write_features("ads.clicks", {"user_id": "123"}, {"click_count": 5}, t0)
        store.write_features("ads.clicks", {"user_id": "123"}, {"click_count": 7}, t0 + timedelta(minutes=1))

        [record] = store.read_features("ads.clicks", [_key("123")])
        assert record.features == {"click_count": 7}

    def test_older_write_never_rewinds(self, store, t0):
        """A late-arriving older event does not overwrite a newer one."""
        store.write_features("ads.clicks", {"user_id": "123"}, {"click_count": 7}, t0)
        stored = store.write_features(
            "ads.clicks", {"user_id": "123"}, {"click_count": 1}, t0 - timedelta(hours=1)
        )

        assert not stored
        [record] = store.read_features("ads.clicks", [_key("123")])
        assert record.features == {"click_count": 7}
        assert record.event_timestamp == t0

    def test_created_timestamp_breaks_ties(self, store, t0):
        store.write_features(
            "ads.clicks", {"user_id": "123"}, {"click_count": 2}, t0, created_timestamp=t0 + timedelta(seconds=5)
        )
        store.write_features("ads.clicks", {"user_id": "123"}, {"click_count": 1}, t0, created_timestamp=t0)

        [record] = store.read_features("ads.clicks", [_key("123")])
        assert record.features == {"click_count": 2}

    def test_absent_keys_are_omitted(self, store, t0):
        store.write_features("ads.clicks", {"user_id": "123"}, {"click_count": 5}, t0)

        records = store.read_features("ads.clicks", [_key("123"), _key("999")])
        assert [r.entity_key for r in records] == [_key("123")]

    def test_tables_are_isolated(self, store, t0):
        store.write_features("ads.clicks", {"user_id": "123"}, {"click_count": 5}, t0)
        assert store.read_features("ads.views", [_key("123")]) == []

    def test_empty_keys(self, store):
        assert store.read_features("ads.clicks", []) == []


class TestSqliteOnlineStoreBatch:
    def test_write_batch_keeps_latest_per_entity(self, store, t0):
        """Only the newest row per entity is stored; ties go to the later row."""
        data = pa.table(
            {
                "user_id": ["1", "1", "2", "2"],
                "ts": [t0, t0 + timedelta(minutes=5), t0, t0],
                "click_count": [1, 2, 10, 20],
            }
        )

        written = store.write_batch("ads.clicks", data, ["user_id"], "ts")

        assert written == 2
        records = {r.entity_key: r for r in store.read_features("ads.clicks", [_key("1"), _key("2")])}
        assert records[_key("1")].features == {"click_count": 2}
        assert records[_key("2")].features == {"click_count": 20}

    def test_write_batch_empty(self, store):
        empty = pa.table({"user_id": pa.array([], pa.string()), "ts": pa.array([], types.Timestamp)})
        assert store.write_batch("ads.clicks", empty, ["user_id"], "ts") == 0

    def test_event_time_bounds(self, store, t0):
        assert store.event_time_bounds("ads.clicks") is None

        store.write_features("ads.clicks", {"user_id": "1"}, {"click_count": 1}, t0)
        store.write_features("ads.clicks", {"user_id": "2"}, {"click_count": 1}, t0 + timedelta(hours=2))

        assert store.event_time_bounds("ads.clicks") == (t0, t0 + timedelta(hours=2))


class TestSqliteOnlineStoreTeardown:
    def test_read_after_teardown_is_empty(self, store, t0):
        """A missing table reads as no data."""
        store.write_features("ads.clicks", {"user_id": "123"}, {"click_count": 5}, t0)
        store.teardown()

        assert store.read_features("ads.clicks", [_key("123")]) == []
        assert store.event_time_bounds("ads.clicks") is None

    def test_other_operational_errors_propagate(self, tmp_path):
        """Errors other than a missing table are not swallowed."""
        bad = sqlite_store.SqliteOnlineStore(path=str(tmp_path / "missing_dir" / "online.db"))
        with pytest.raises(sqlite3.OperationalError):
            bad.read_features("ads.clicks", [_key("1")])


class TestSqliteOnlineStoreConfig:
    def test_is_frozen(self, tmp_path):
        s = sqlite_store.SqliteOnlineStore(path=str(tmp_path / "online.db"))
        with pytest.raises(Exception):
            s.path = "/other"

    def test_rejects_unknown_fields(self, tmp_path):
        with pytest.raises(Exception):
            sqlite_store.SqliteOnlineStore(path=str(tmp_path / "online.db"), host="localhost")
