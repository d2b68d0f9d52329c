"""SQLite online store implementation for low-latency feature serving.

Stores the latest feature vector per entity key in a SQLite database.
Entity keys are stored as canonical JSON strings (sorted keys), feature
data as JSON, and timestamps as fixed-width UTC ISO 8601 strings so that
string comparison orders them correctly.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Literal

import pyarrow as pa

import quiver.types as types
from quiver.online import base

# SQLite's default limit on bound parameters is 999.
_READ_CHUNK = 500

_UPSERT = """
    INSERT INTO features
        (table_name, entity_key, feature_data, event_timestamp, created_timestamp)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT (table_name, entity_key) DO UPDATE SET
        feature_data = excluded.feature_data,
        event_timestamp = excluded.event_timestamp,
        created_timestamp = excluded.created_timestamp
    WHERE excluded.event_timestamp > features.event_timestamp
       OR (excluded.event_timestamp = features.event_timestamp
           AND excluded.created_timestamp >= features.created_timestamp)
"""


class SqliteOnlineStore(base.BaseOnlineStore):
    """SQLite-backed online feature store.

    Stores feature vectors in a single ``features`` table with composite
    primary key (table_name, entity_key). Suitable for local development
    and single-machine deployments.

    Example:
        store = SqliteOnlineStore(path="/tmp/online.db")
        store.initialize()
        store.write_features(
            table_name="ads.clicks",
            entity_key={"user_id": "123"},
            features={"click_count": 5},
            event_timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
    """

    kind: Literal["sqlite"] = "sqlite"
    path: str

    def initialize(self) -> None:
        """Create the features table if it doesn't exist. Idempotent."""
        conn = sqlite3.connect(self.path)
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS features (
                    table_name TEXT NOT NULL,
                    entity_key TEXT NOT NULL,
                    feature_data TEXT NOT NULL,
                    event_timestamp TEXT NOT NULL,
                    created_timestamp TEXT NOT NULL DEFAULT '',
                    PRIMARY KEY (table_name, entity_key)
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def write_features(
        self,
        table_name: str,
        entity_key: Mapping[str, Any],
        features: Mapping[str, Any],
        event_timestamp: datetime,
        created_timestamp: datetime | None = None,
    ) -> bool:
        """Upsert a single entity's feature vector unless a newer one is stored."""
        conn = sqlite3.connect(self.path)
        try:
            cursor = conn.execute(
                _UPSERT,
                (
                    table_name,
                    types.canonical_key(entity_key),
                    json.dumps(dict(features), default=str),
                    _encode_ts(event_timestamp),
                    _encode_ts(created_timestamp),
                ),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def write_batch(
        self,
        table_name: str,
        data: pa.Table,
        entity_columns: list[str],
        timestamp_column: str,
        created_timestamp_column: str | None = None,
    ) -> int:
        """Write latest-per-entity from a batch into the online store.

        For each unique entity key, finds the row with the latest timestamp
        (created timestamp breaks ties, then the later row) and upserts it.
        """
        if data.num_rows == 0:
            return 0

        reserved = set(entity_columns) | {timestamp_column}
        if created_timestamp_column:
            reserved.add(created_timestamp_column)
        feature_columns = [c for c in data.column_names if c not in reserved]

        latest_per_entity: dict[str, tuple[tuple, tuple]] = {}
        for ordinal, row in enumerate(data.to_pylist()):
            key_json = types.canonical_key({col: row[col] for col in entity_columns})
            event_ts = _encode_ts(row[timestamp_column])
            created_ts = _encode_ts(row[created_timestamp_column]) if created_timestamp_column else ""
            rank = (event_ts, created_ts, ordinal)
            if key_json not in latest_per_entity or rank > latest_per_entity[key_json][0]:
                features = {col: row[col] for col in feature_columns}
                latest_per_entity[key_json] = (
                    rank,
                    (table_name, key_json, json.dumps(features, default=str), event_ts, created_ts),
                )

        conn = sqlite3.connect(self.path)
        try:
            conn.executemany(_UPSERT, [params for _, params in latest_per_entity.values()])
            conn.commit()
        finally:
            conn.close()
        return len(latest_per_entity)

    def read_features(
        self,
        table_name: str,
        entity_keys: Sequence[str],
    ) -> list[base.OnlineRecord]:
        """Read stored vectors for canonical entity keys."""
        records: list[base.OnlineRecord] = []
        if not entity_keys:
            return records

        conn = sqlite3.connect(self.path)
        try:
            for start in range(0, len(entity_keys), _READ_CHUNK):
                chunk = list(entity_keys[start : start + _READ_CHUNK])
                placeholders = ", ".join("?" for _ in chunk)
                try:
                    cursor = conn.execute(
                        f"""
                        SELECT entity_key, feature_data, event_timestamp, created_timestamp
                        FROM features
                        WHERE table_name = ? AND entity_key IN ({placeholders})
                        """,
                        (table_name, *chunk),
                    )
                except sqlite3.OperationalError as e:
                    # Table doesn't exist (e.g., after teardown or before initialize)
                    if _is_missing_table(e):
                        return []
                    raise
                for entity_key, feature_data, event_ts, created_ts in cursor.fetchall():
                    records.append(
                        base.OnlineRecord(
                            entity_key=entity_key,
                            features=json.loads(feature_data),
                            event_timestamp=types.ensure_utc(event_ts),
                            created_timestamp=types.ensure_utc(created_ts) if created_ts else None,
                        )
                    )
        finally:
            conn.close()
        return records

    def event_time_bounds(self, table_name: str) -> tuple[datetime, datetime] | None:
        """Oldest and newest stored event time for a table."""
        conn = sqlite3.connect(self.path)
        try:
            row = conn.execute(
                "SELECT MIN(event_timestamp), MAX(event_timestamp) FROM features WHERE table_name = ?",
                (table_name,),
            ).fetchone()
        except sqlite3.OperationalError as e:
            if _is_missing_table(e):
                return None
            raise
        finally:
            conn.close()
        if row is None or row[0] is None:
            return None
        return types.ensure_utc(row[0]), types.ensure_utc(row[1])

    def teardown(self) -> None:
        """Drop the features table."""
        conn = sqlite3.connect(self.path)
        try:
            conn.execute("DROP TABLE IF EXISTS features")
            conn.commit()
        finally:
            conn.close()


def _encode_ts(value: datetime | str | None) -> str:
    """Fixed-width UTC ISO string; empty string for a missing timestamp."""
    if value is None:
        return ""
    return types.ensure_utc(value).isoformat(timespec="microseconds")


def _is_missing_table(error: sqlite3.OperationalError) -> bool:
    return "no such table" in str(error)
