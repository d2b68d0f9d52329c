"""Base online store abstraction for low-latency feature serving.

The online store is a key-value cache holding the latest feature vector per
entity key for each streaming source. Stream consumers (external) write to
it; the stream adapter reads from it. BaseOnlineStore defines the interface
all online store implementations follow.
"""

from __future__ import annotations

import abc
import dataclasses
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

import pyarrow as pa
import pydantic as pdt


@dataclasses.dataclass(frozen=True)
class OnlineRecord:
    """Stored feature vector for one entity of one source."""

    entity_key: str
    features: Mapping[str, Any]
    event_timestamp: datetime
    created_timestamp: datetime | None = None
    ordinal: int = 0


class BaseOnlineStore(abc.ABC, pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Abstract base class for online feature stores.

    Implementations must be frozen Pydantic models (config-as-code).
    Writes never rewind an entity to an older event time.
    """

    kind: str

    @abc.abstractmethod
    def initialize(self) -> None:
        """Create tables/schema if needed. Idempotent."""
        ...

    @abc.abstractmethod
    def write_features(
        self,
        table_name: str,
        entity_key: Mapping[str, Any],
        features: Mapping[str, Any],
        event_timestamp: datetime,
        created_timestamp: datetime | None = None,
    ) -> bool:
        """Upsert a single entity's feature vector.

        Returns:
            True if the row was stored, False if a newer row was already present.
        """
        ...

    @abc.abstractmethod
    def write_batch(
        self,
        table_name: str,
        data: pa.Table,
        entity_columns: list[str],
        timestamp_column: str,
        created_timestamp_column: str | None = None,
    ) -> int:
        """Write latest-per-entity from a batch (bulk publish).

        Returns:
            Number of entities written.
        """
        ...

    @abc.abstractmethod
    def read_features(
        self,
        table_name: str,
        entity_keys: Sequence[str],
    ) -> list[OnlineRecord]:
        """Read stored vectors for canonical entity keys.

        Keys with no stored vector are absent from the result (not an error).
        """
        ...

    @abc.abstractmethod
    def event_time_bounds(self, table_name: str) -> tuple[datetime, datetime] | None:
        """Oldest and newest stored event time, or None for an empty table."""
        ...

    @abc.abstractmethod
    def teardown(self) -> None:
        """Remove all data. Used for cleanup."""
        ...
