"""Fan-out dispatch of point lookups across sources.

One task is issued per (source, entity batch) on a shared thread pool, all
under a single request deadline. When a streaming or push source's online
copy is not fresh enough for as_of, the source's declared batch source is
queried as well and both results become merge candidates.

Failures are captured per (source, entity key) and never abort the
request; the merge step turns them into per-feature error outcomes.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import time
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import quiver.errors as errors
import quiver.sources as sources
from quiver.adapters import base as adapter_base
from quiver.freshness import FreshnessTracker
from quiver.resolver import SourceGroup

logger = logging.getLogger(__name__)

SourceKey = tuple[str, str]

ONLINE_TIER = 1
FALLBACK_TIER = 0

_NO_CREATED = datetime.min.replace(tzinfo=timezone.utc)


@dataclasses.dataclass(frozen=True)
class Candidate:
    """A row offered to the merge step, tagged with where it came from.

    On fully tied rows the online copy (higher tier) beats the fallback.
    """

    row: adapter_base.LookupRow
    tier: int

    def sort_key(self) -> tuple[datetime, datetime, int, int]:
        return (
            self.row.event_timestamp,
            self.row.created_timestamp or _NO_CREATED,
            self.tier,
            self.row.ordinal,
        )


@dataclasses.dataclass
class SourceOutcome:
    """Everything one source produced for a request."""

    source: sources.DataSource
    candidates: dict[str, list[Candidate]] = dataclasses.field(default_factory=dict)
    failures: dict[str, errors.QuiverError] = dataclasses.field(default_factory=dict)
    used_fallback: bool = False

    def add_rows(self, rows: Sequence[adapter_base.LookupRow], tier: int) -> None:
        for row in rows:
            self.candidates.setdefault(row.entity_key, []).append(Candidate(row=row, tier=tier))

    def fail(self, keys: Sequence[str], error: errors.QuiverError) -> None:
        for key in keys:
            self.failures.setdefault(key, error)


@dataclasses.dataclass
class DispatchResult:
    """Per-source outcomes plus the entity key each request row maps to."""

    outcomes: dict[SourceKey, SourceOutcome]
    row_keys: dict[SourceKey, list[str]]

    @property
    def attempted(self) -> int:
        return sum(len(keys) for keys in self.row_keys.values())

    def timed_out_everywhere(self) -> bool:
        """True if every entity of every source timed out."""
        if not self.outcomes:
            return False
        for key, outcome in self.outcomes.items():
            for entity_key in set(self.row_keys.get(key, [])):
                failure = outcome.failures.get(entity_key)
                if not isinstance(failure, errors.BackendTimeoutError):
                    return False
        return True


@dataclasses.dataclass(frozen=True)
class _Task:
    key: SourceKey
    source: sources.DataSource
    adapter: adapter_base.StoreAdapter
    batch: tuple[adapter_base.EntityKey, ...]
    fields: tuple[str, ...]
    tier: int


def entity_keys_for(
    source: sources.DataSource,
    rows: Sequence[Mapping[str, Any]],
) -> tuple[list[str], list[adapter_base.EntityKey]]:
    """Compute each row's entity key for ``source`` and the distinct lookups.

    Sources without join keys (request-time, custom) are row-scoped: every
    request row is its own entity and carries its full mapping.
    """
    row_keys: list[str] = []
    distinct: dict[str, adapter_base.EntityKey] = {}
    for index, row in enumerate(rows):
        if source.join_keys:
            key = source.entity_key(row)
            values: Mapping[str, Any] = {k: row[k] for k in source.join_keys}
        else:
            key = f"#{index}"
            values = row
        row_keys.append(key)
        distinct.setdefault(key, adapter_base.EntityKey(key=key, values=values))
    return row_keys, list(distinct.values())


def _fallback_keys(
    fallback: sources.DataSource,
    entity_keys: Sequence[adapter_base.EntityKey],
) -> list[adapter_base.EntityKey]:
    """Re-key lookups for the batch source, keeping the primary's key strings."""
    return [
        adapter_base.EntityKey(key=e.key, values={k: e.values[k] for k in fallback.join_keys})
        for e in entity_keys
    ]


class FanOutDispatcher:
    """Issues point lookups concurrently under one deadline.

    Args:
        adapters: Adapter lookup table keyed by source type.
        tracker: Freshness tracker consulted before dispatch.
        max_staleness: Acceptable staleness of an online copy.
        batch_size: Maximum entity keys per adapter call.
        max_workers: Size of the shared thread pool.
        max_retries: Extra attempts on BackendUnavailable within the deadline.
        retry_backoff: Seconds to wait before a retry.
    """

    def __init__(
        self,
        adapters: adapter_base.AdapterTable,
        tracker: FreshnessTracker,
        max_staleness: timedelta = timedelta(minutes=5),
        batch_size: int = 256,
        max_workers: int = 16,
        max_retries: int = 1,
        retry_backoff: float = 0.01,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.adapters = adapters
        self.tracker = tracker
        self.max_staleness = max_staleness
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="quiver-dispatch",
        )

    def close(self) -> None:
        """Shut down the worker pool; queued lookups are cancelled."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> FanOutDispatcher:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def dispatch(
        self,
        rows: Sequence[Mapping[str, Any]],
        groups: Mapping[SourceKey, SourceGroup],
        as_of: datetime,
        deadline: float,
    ) -> DispatchResult:
        """Run every lookup the request needs.

        Args:
            rows: Entity rows in request order.
            groups: Resolved features grouped by source.
            as_of: Point-in-time cutoff (aware UTC).
            deadline: Absolute ``time.monotonic()`` deadline.
        """
        outcomes: dict[SourceKey, SourceOutcome] = {}
        row_keys: dict[SourceKey, list[str]] = {}
        tasks: list[_Task] = []

        for key, group in groups.items():
            source = group.source
            outcome = outcomes[key] = SourceOutcome(source=source)
            keys_by_row, entity_keys = entity_keys_for(source, rows)
            row_keys[key] = keys_by_row
            fields = tuple(group.field_names)

            adapter = self.adapters.get(source.type)
            if adapter is None:
                outcome.fail(
                    [e.key for e in entity_keys],
                    errors.BackendRejectedError(
                        source.name,
                        cause=f"no adapter is registered for {source.type.name}",
                        fix="Register a StoreAdapter for this source type.",
                    ),
                )
                continue

            if adapter.inline:
                # No I/O: serve in the calling thread.
                self._run_inline(outcome, adapter, source, entity_keys, fields, as_of)
            else:
                tasks += self._tasks(key, source, adapter, entity_keys, fields, ONLINE_TIER)

            if self._needs_fallback(source, as_of):
                fallback = source.batch_source
                fallback_adapter = self.adapters.get(fallback.type)
                if fallback_adapter is None:
                    logger.warning(
                        "No adapter for batch source '%s' of '%s'; serving online copy only",
                        fallback.name,
                        source.name,
                    )
                else:
                    outcome.used_fallback = True
                    tasks += self._tasks(
                        key, fallback, fallback_adapter, _fallback_keys(fallback, entity_keys), fields, FALLBACK_TIER
                    )

        self._run(tasks, outcomes, as_of, deadline)
        return DispatchResult(outcomes=outcomes, row_keys=row_keys)

    def _needs_fallback(self, source: sources.DataSource, as_of: datetime) -> bool:
        if source.batch_source is None or not source.type.supports_batch_source:
            return False
        return not self.tracker.is_fresh(source, as_of, self.max_staleness)

    def _tasks(
        self,
        key: SourceKey,
        source: sources.DataSource,
        adapter: adapter_base.StoreAdapter,
        entity_keys: Sequence[adapter_base.EntityKey],
        fields: tuple[str, ...],
        tier: int,
    ) -> list[_Task]:
        return [
            _Task(
                key=key,
                source=source,
                adapter=adapter,
                batch=tuple(entity_keys[start : start + self.batch_size]),
                fields=fields,
                tier=tier,
            )
            for start in range(0, len(entity_keys), self.batch_size)
        ]

    def _run_inline(
        self,
        outcome: SourceOutcome,
        adapter: adapter_base.StoreAdapter,
        source: sources.DataSource,
        entity_keys: Sequence[adapter_base.EntityKey],
        fields: tuple[str, ...],
        as_of: datetime,
    ) -> None:
        try:
            rows = adapter.point_lookup(source, source.options, entity_keys, fields, as_of)
        except errors.BackendError as e:
            outcome.fail([k.key for k in entity_keys], e)
            return
        outcome.add_rows(rows, ONLINE_TIER)

    def _run(
        self,
        tasks: list[_Task],
        outcomes: dict[SourceKey, SourceOutcome],
        as_of: datetime,
        deadline: float,
    ) -> None:
        if not tasks:
            return
        futures = {
            self._executor.submit(self._call, task, as_of, deadline): task for task in tasks
        }
        remaining = max(0.0, deadline - time.monotonic())
        done, not_done = concurrent.futures.wait(futures, timeout=remaining)

        for future in not_done:
            future.cancel()
            task = futures[future]
            logger.warning("Lookup on '%s' cancelled at deadline", task.source.name)
            if task.tier == ONLINE_TIER:
                outcomes[task.key].fail([e.key for e in task.batch], errors.BackendTimeoutError(task.source.name))

        # Iterate in submission order so results are applied deterministically.
        for future, task in futures.items():
            if future not in done:
                continue
            outcome = outcomes[task.key]
            try:
                rows = future.result()
            except errors.BackendError as e:
                if task.tier == ONLINE_TIER:
                    outcome.fail([k.key for k in task.batch], e)
                else:
                    logger.warning("Historical fallback '%s' failed: %s", task.source.name, e.cause)
                continue
            outcome.add_rows(rows, task.tier)

    def _call(self, task: _Task, as_of: datetime, deadline: float) -> list[adapter_base.LookupRow]:
        """Invoke one adapter call, retrying transient failures within the deadline."""
        attempt = 0
        while True:
            try:
                return task.adapter.point_lookup(task.source, task.source.options, task.batch, task.fields, as_of)
            except errors.BackendUnavailableError:
                attempt += 1
                if attempt > self.max_retries or time.monotonic() + self.retry_backoff >= deadline:
                    raise
                logger.info("Retrying '%s' after transient failure (attempt %d)", task.source.name, attempt)
                time.sleep(self.retry_backoff)
            except errors.BackendError:
                raise
            except Exception as e:
                logger.exception("Adapter for '%s' raised an unexpected error", task.source.name)
                raise errors.BackendRejectedError(task.source.name, f"{type(e).__name__}: {e}") from e
