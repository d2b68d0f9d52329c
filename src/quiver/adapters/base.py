"""Store adapter contract and the adapter lookup table.

One adapter exists per backend family. The dispatcher picks an adapter by
``SourceType`` from an ``AdapterTable`` and never branches on the type
itself; supporting a new backend means implementing ``StoreAdapter`` and
registering it.

Row selection order (shared by every adapter and by the merge step):
a row with a later event time wins; on equal event times the larger
``created_timestamp`` wins, and a row with a created timestamp beats one
without; if still tied, the larger ``ordinal`` (later in the backend's
scan or arrival order) wins.
"""

from __future__ import annotations

import abc
import dataclasses
import threading
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

import quiver.sources as sources

_NO_CREATED = datetime.min.replace(tzinfo=timezone.utc)


@dataclasses.dataclass(frozen=True)
class EntityKey:
    """One entity to look up.

    ``key`` is the canonical identity used to match rows back to the
    request. ``values`` holds the join-key values (or, for request-time
    sources, the full entity row carrying the inline values).
    """

    key: str
    values: Mapping[str, Any]


@dataclasses.dataclass(frozen=True)
class LookupRow:
    """A candidate row returned by an adapter, keyed by canonical names."""

    entity_key: str
    values: Mapping[str, Any]
    event_timestamp: datetime
    created_timestamp: datetime | None = None
    ordinal: int = 0

    def sort_key(self) -> tuple[datetime, datetime, int]:
        return (
            self.event_timestamp,
            self.created_timestamp or _NO_CREATED,
            self.ordinal,
        )


def latest_per_entity(rows: Iterable[LookupRow], as_of: datetime) -> list[LookupRow]:
    """Keep the winning row per entity among rows with event time <= as_of."""
    winners: dict[str, LookupRow] = {}
    for row in rows:
        if row.event_timestamp > as_of:
            continue
        current = winners.get(row.entity_key)
        if current is None or row.sort_key() > current.sort_key():
            winners[row.entity_key] = row
    return list(winners.values())


class StoreAdapter(abc.ABC):
    """Point-lookup capability for one backend family."""

    #: True for adapters that never perform I/O.
    inline: bool = False

    @abc.abstractmethod
    def point_lookup(
        self,
        source: sources.DataSource,
        options: sources.BaseOptions,
        entity_keys: Sequence[EntityKey],
        fields: Sequence[str],
        as_of: datetime,
    ) -> list[LookupRow]:
        """Fetch the most recent row per entity with event time <= as_of.

        Returns at most one row per entity key; entities with no qualifying
        row are simply absent. ``fields`` are canonical feature names.

        Raises:
            BackendUnavailableError: Transient failure; may be retried.
            BackendRejectedError: Terminal failure, e.g. a malformed query.
        """
        ...


class AdapterTable:
    """Lookup table of adapters keyed by source type.

    Registration swaps in a new mapping, so readers never lock.
    """

    def __init__(self, adapters: Mapping[sources.SourceType, StoreAdapter] | None = None) -> None:
        self._lock = threading.Lock()
        self._adapters: Mapping[sources.SourceType, StoreAdapter] = dict(adapters or {})

    def register(self, source_type: sources.SourceType, adapter: StoreAdapter) -> None:
        with self._lock:
            updated = dict(self._adapters)
            updated[source_type] = adapter
            self._adapters = updated

    def get(self, source_type: sources.SourceType) -> StoreAdapter | None:
        return self._adapters.get(source_type)

    def __contains__(self, source_type: object) -> bool:
        return source_type in self._adapters

    def types(self) -> list[sources.SourceType]:
        return sorted(self._adapters)
