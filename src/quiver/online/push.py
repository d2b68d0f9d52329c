"""In-process buffer backing push sources.

Producers call ``write`` out-of-band; the push adapter reads. Each entity
keeps a short, time-ordered history so point-in-time reads just behind the
newest value still resolve. Writes replace an immutable tuple under a lock;
reads never lock.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

import quiver.sources as sources
import quiver.types as types
from quiver.online.base import OnlineRecord

logger = logging.getLogger(__name__)

SourceKey = tuple[str, str]


class PushBuffer:
    """Bounded per-entity history of pushed feature vectors."""

    def __init__(self, max_versions: int = 16) -> None:
        if max_versions < 1:
            raise ValueError("max_versions must be at least 1")
        self.max_versions = max_versions
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._data: dict[SourceKey, dict[str, tuple[OnlineRecord, ...]]] = {}

    def write(
        self,
        source: sources.DataSource | SourceKey,
        entity_key: Mapping[str, Any] | str,
        fields: Mapping[str, Any],
        event_time: datetime,
        created_time: datetime | None = None,
    ) -> None:
        """Append a feature vector for one entity of a push source."""
        source_key = source.key if isinstance(source, sources.DataSource) else source
        key = entity_key if isinstance(entity_key, str) else types.canonical_key(entity_key)
        with self._lock:
            record = OnlineRecord(
                entity_key=key,
                features=dict(fields),
                event_timestamp=types.ensure_utc(event_time),
                created_timestamp=types.ensure_utc(created_time) if created_time else None,
                ordinal=next(self._sequence),
            )
            entities = self._data.setdefault(source_key, {})
            history = sorted(
                (*entities.get(key, ()), record),
                key=lambda r: (r.event_timestamp, r.created_timestamp or types.EPOCH, r.ordinal),
            )
            entities[key] = tuple(history[-self.max_versions :])

    def read(
        self,
        source: sources.DataSource | SourceKey,
        entity_keys: Sequence[str],
        as_of: datetime,
    ) -> list[OnlineRecord]:
        """Newest record per entity with event time <= as_of.

        Entities with nothing buffered at or before as_of are absent.
        """
        source_key = source.key if isinstance(source, sources.DataSource) else source
        entities = self._data.get(source_key, {})
        records = []
        for key in entity_keys:
            history = entities.get(key, ())
            for record in reversed(history):
                if record.event_timestamp <= as_of:
                    records.append(record)
                    break
        return records

    def clear(self, source: sources.DataSource | SourceKey | None = None) -> None:
        with self._lock:
            if source is None:
                self._data.clear()
            else:
                source_key = source.key if isinstance(source, sources.DataSource) else source
                self._data.pop(source_key, None)
