"""Freshness tracking for catalog sources.

The tracker is the only process-wide mutable state in the serving path.
It is populated exclusively by freshness reporters (materialization jobs,
stream consumers) and consulted by the dispatcher to decide whether a
low-latency copy can serve a request on its own.

Each source maps to an immutable ``SourceFreshness`` value. A report builds
a new value and swaps it in under that source's writer lock; readers take
the current value without locking, so a request never blocks on a writer
and never sees a half-applied report.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Literal

import quiver.sources as sources
import quiver.types as types

logger = logging.getLogger(__name__)

SourceKey = tuple[str, str]


@dataclass(frozen=True)
class SourceFreshness:
    """Observed event-time bounds for one source."""

    earliest_event_timestamp: datetime | None = None
    latest_event_timestamp: datetime | None = None
    created_timestamp: datetime | None = None
    last_updated_timestamp: datetime | None = None

    def as_meta(self) -> sources.SourceMeta:
        return sources.SourceMeta(
            earliest_event_timestamp=self.earliest_event_timestamp,
            latest_event_timestamp=self.latest_event_timestamp,
            created_timestamp=self.created_timestamp,
            last_updated_timestamp=self.last_updated_timestamp,
        )


@dataclass(frozen=True)
class FreshnessStatus:
    """Staleness of one source relative to wall-clock time."""

    project: str
    source_name: str
    latest_event_timestamp: datetime | None
    last_updated_timestamp: datetime | None
    data_staleness: timedelta | None  # Time since newest observed event
    max_staleness: timedelta
    status: Literal["fresh", "stale", "unknown"]


def _min(a: datetime | None, b: datetime) -> datetime:
    return b if a is None or b < a else a


def _max(a: datetime | None, b: datetime) -> datetime:
    return b if a is None or b > a else a


class FreshnessTracker:
    """Per-source event-time bookkeeping with snapshot reads.

    Timestamps only move forward: ``latest_event_timestamp`` and
    ``last_updated_timestamp`` never rewind, and ``earliest_event_timestamp``
    only widens to cover older data. ``reset`` is the only way back.
    """

    def __init__(self) -> None:
        self._entries: Mapping[SourceKey, SourceFreshness] = MappingProxyType({})
        self._locks: dict[SourceKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def _key(source: sources.DataSource | SourceKey) -> SourceKey:
        return source.key if isinstance(source, sources.DataSource) else source

    def _lock_for(self, key: SourceKey) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def report(
        self,
        source: sources.DataSource | SourceKey,
        observed_min: datetime,
        observed_max: datetime,
        wall_clock: datetime | None = None,
    ) -> SourceFreshness:
        """Record that a reporter observed event times in [observed_min, observed_max].

        Returns:
            The freshness value now in effect for the source.
        """
        key = self._key(source)
        observed_min = types.ensure_utc(observed_min)
        observed_max = types.ensure_utc(observed_max)
        if observed_min > observed_max:
            raise ValueError("observed_min must not be after observed_max")
        wall_clock = types.ensure_utc(wall_clock) if wall_clock is not None else types.utc_now()

        with self._lock_for(key):
            current = self._entries.get(key, SourceFreshness())
            if current.latest_event_timestamp is not None and observed_max < current.latest_event_timestamp:
                logger.debug("Ignoring older latest event time for %s/%s", *key)
            updated = SourceFreshness(
                earliest_event_timestamp=_min(current.earliest_event_timestamp, observed_min),
                latest_event_timestamp=_max(current.latest_event_timestamp, observed_max),
                created_timestamp=current.created_timestamp or wall_clock,
                last_updated_timestamp=_max(current.last_updated_timestamp, wall_clock),
            )
            self._publish(key, updated)
        return updated

    def _publish(self, key: SourceKey, value: SourceFreshness | None) -> None:
        # Copy-on-write: other sources' writers may publish concurrently,
        # so the mapping swap itself is serialized.
        with self._locks_guard:
            staged = dict(self._entries)
            if value is None:
                staged.pop(key, None)
            else:
                staged[key] = value
            self._entries = MappingProxyType(staged)

    def get(self, source: sources.DataSource | SourceKey) -> SourceFreshness | None:
        return self._entries.get(self._key(source))

    def snapshot(self) -> Mapping[SourceKey, SourceFreshness]:
        """Immutable view of every tracked source."""
        return self._entries

    def is_fresh(
        self,
        source: sources.DataSource | SourceKey,
        as_of: datetime,
        max_staleness: timedelta,
    ) -> bool:
        """True iff the newest observed event lies in [as_of - max_staleness, as_of].

        A source with no reports is never fresh. A source whose newest event
        is after as_of cannot answer for as_of from its latest-value copy
        alone, so it is not fresh either.
        """
        entry = self.get(source)
        if entry is None or entry.latest_event_timestamp is None:
            return False
        as_of = types.ensure_utc(as_of)
        return as_of - max_staleness <= entry.latest_event_timestamp <= as_of

    def stamp(self, source: sources.DataSource) -> sources.DataSource:
        """Copy of ``source`` whose meta reflects the tracked freshness."""
        entry = self.get(source)
        if entry is None:
            return source
        return source.with_meta(entry.as_meta())

    def reset(self, source: sources.DataSource | SourceKey | None = None) -> None:
        """Administrative reset: forget one source, or everything.

        This is the only operation that can move timestamps backwards.
        """
        if source is None:
            with self._locks_guard:
                self._entries = MappingProxyType({})
            logger.info("Freshness tracker reset")
            return
        key = self._key(source)
        with self._lock_for(key):
            self._publish(key, None)
        logger.info("Freshness reset for %s/%s", *key)

    def report_status(
        self,
        catalog: list[sources.DataSource],
        max_staleness: timedelta,
        now: datetime | None = None,
    ) -> list[FreshnessStatus]:
        """Compute staleness of each source against wall-clock time.

        Args:
            catalog: Sources to report on.
            max_staleness: Threshold beyond which a source is stale.
            now: Override current time for testing. Defaults to UTC now.
        """
        now = types.ensure_utc(now) if now is not None else types.utc_now()
        results = []
        for source in catalog:
            entry = self.get(source)
            if entry is None or entry.latest_event_timestamp is None:
                results.append(
                    FreshnessStatus(
                        project=source.project,
                        source_name=source.name,
                        latest_event_timestamp=None,
                        last_updated_timestamp=None,
                        data_staleness=None,
                        max_staleness=max_staleness,
                        status="unknown",
                    )
                )
                continue
            staleness = now - entry.latest_event_timestamp
            results.append(
                FreshnessStatus(
                    project=source.project,
                    source_name=source.name,
                    latest_event_timestamp=entry.latest_event_timestamp,
                    last_updated_timestamp=entry.last_updated_timestamp,
                    data_staleness=staleness,
                    max_staleness=max_staleness,
                    status="stale" if staleness > max_staleness else "fresh",
                )
            )
        return results
