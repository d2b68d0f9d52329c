"""Serving façade: the retrieval entry point used by prediction services.

A request is validated up front, then flows Resolver -> Dispatcher ->
Merge. Only malformed input or a deadline that expires with nothing
assembled fail the whole request; every other problem is reported per
feature in the response.

Example:
    server = FeatureServer.from_settings(load_quiver_settings())
    response = server.get_online_features(
        OnlineFeaturesRequest(
            entity_rows=[{"user_id": 1}],
            feature_references=["clicks:click_count"],
        )
    )
    response.rows[0]["clicks:click_count"].value
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

import pydantic as pdt

import quiver.errors as errors
import quiver.online as online
import quiver.settings as settings_mod
import quiver.types as types
from quiver.adapters import AdapterTable, default_adapter_table, report_online_freshness
from quiver.dispatcher import FanOutDispatcher
from quiver.freshness import FreshnessTracker
from quiver.merge import FeatureValue, MergeEngine
from quiver.registry import SourceRegistry
from quiver.resolver import FeatureReference, Resolution, SourceResolver

logger = logging.getLogger(__name__)


class OnlineFeaturesRequest(pdt.BaseModel, frozen=True, extra="forbid"):
    """Entity rows plus the features to fetch for each of them."""

    entity_rows: list[dict[str, Any]]
    feature_references: list[str | FeatureReference]
    as_of: datetime | None = None
    deadline_ms: float | None = pdt.Field(default=None, gt=0)


class OnlineFeaturesResponse(pdt.BaseModel, frozen=True):
    """One feature vector per entity row, aligned with the request."""

    as_of: datetime
    feature_names: list[str]
    rows: list[dict[str, FeatureValue]]

    def values(self, name: str) -> list[Any]:
        """Column of raw values for one feature; non-values become None."""
        return [row[name].value for row in self.rows]

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "features": self.feature_names,
            "rows": [
                {name: value.model_dump(mode="json", exclude_none=True) for name, value in row.items()}
                for row in self.rows
            ],
        }


class FeatureServer:
    """Online retrieval over a source catalog.

    Args:
        registry: Source catalog; one snapshot is taken per request.
        adapters: Store adapters keyed by source type.
        tracker: Freshness tracker fed by materialization and stream jobs.
        settings: Project and serving limits.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        adapters: AdapterTable,
        tracker: FreshnessTracker,
        settings: settings_mod.QuiverSettings,
    ) -> None:
        self.registry = registry
        self.adapters = adapters
        self.tracker = tracker
        self.settings = settings
        serving = settings.serving
        self.dispatcher = FanOutDispatcher(
            adapters,
            tracker,
            max_staleness=serving.max_staleness,
            batch_size=serving.batch_size,
            max_workers=serving.max_workers,
            max_retries=serving.max_retries,
            retry_backoff=serving.retry_backoff_ms / 1000,
        )
        self.merger = MergeEngine()

    @classmethod
    def from_settings(
        cls,
        settings: settings_mod.QuiverSettings,
        push_buffer: online.PushBuffer | None = None,
        tracker: FreshnessTracker | None = None,
    ) -> FeatureServer:
        """Wire a server from configuration.

        Loads the catalog, initializes the online store, and registers the
        default adapters. Streaming sources are only served when an online
        store is configured.
        """
        registry = SourceRegistry()
        if settings.catalog_path is not None:
            registry.load(settings_mod.load_catalog(settings.catalog_path, project=settings.project))

        tracker = tracker or FreshnessTracker()
        store = settings.online_store
        if store is not None:
            store.initialize()
            catalog = [entry.source for entry in registry.snapshot().entries()]
            report_online_freshness(store, tracker, catalog)
        if push_buffer is None:
            push_buffer = online.PushBuffer(max_versions=settings.push_buffer_size)

        table = default_adapter_table(online_store=store, push_buffer=push_buffer)
        return cls(registry, table, tracker, settings)

    def close(self) -> None:
        self.dispatcher.close()

    def __enter__(self) -> FeatureServer:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def get_online_features(self, request: OnlineFeaturesRequest) -> OnlineFeaturesResponse:
        """Fetch point-in-time correct feature vectors.

        Raises:
            ValidationError: Empty rows or references, a malformed reference,
                or an entity row missing a join key of a source it touches.
            DeadlineExceededError: Every lookup timed out before any result
                could be assembled.
        """
        started = time.monotonic()
        deadline_ms = request.deadline_ms or self.settings.serving.deadline_ms
        deadline = started + deadline_ms / 1000

        rows = request.entity_rows
        if not rows:
            raise errors.ValidationError(
                context="Validating online features request",
                cause="entity_rows is empty",
                fix="Send at least one entity row.",
            )
        references = self._parse_references(request.feature_references)
        as_of = types.ensure_utc(request.as_of) if request.as_of is not None else types.utc_now()

        resolution = SourceResolver(self.registry.snapshot()).resolve_many(references)
        self._check_join_keys(rows, resolution)

        dispatched = self.dispatcher.dispatch(rows, resolution.groups, as_of, deadline)
        if dispatched.timed_out_everywhere():
            raise errors.DeadlineExceededError(
                deadline_ms,
                pending=sorted(group.source.name for group in resolution.groups.values()),
            )

        vectors = self.merger.merge(resolution, dispatched, len(rows), as_of)
        logger.debug(
            "Served %d row(s) x %d feature(s) in %.1fms",
            len(rows),
            len(references),
            (time.monotonic() - started) * 1000,
        )
        return OnlineFeaturesResponse(
            as_of=as_of,
            feature_names=[ref.label for ref in references],
            rows=vectors,
        )

    def _parse_references(self, raw: Sequence[str | FeatureReference]) -> list[FeatureReference]:
        if not raw:
            raise errors.ValidationError(
                context="Validating online features request",
                cause="feature_references is empty",
                fix="Request at least one feature.",
            )
        references = []
        for item in raw:
            if isinstance(item, FeatureReference):
                references.append(item)
            else:
                references.append(FeatureReference.parse(item, default_project=self.settings.project))
        labels = [ref.label for ref in references]
        if len(set(labels)) != len(labels):
            raise errors.ValidationError(
                context="Validating online features request",
                cause="the same 'source:feature' is requested twice",
                fix="Request each feature once; response keys must be unique.",
            )
        return references

    @staticmethod
    def _check_join_keys(rows: Sequence[Mapping[str, Any]], resolution: Resolution) -> None:
        for group in resolution.groups.values():
            for index, row in enumerate(rows):
                missing = [key for key in group.source.join_keys if key not in row]
                if missing:
                    raise errors.ValidationError(
                        context="Validating online features request",
                        cause=(
                            f"entity row {index} is missing join key(s) {', '.join(missing)} "
                            f"of source '{group.source.name}'"
                        ),
                        fix="Include every join key of the sources you request features from.",
                    )
